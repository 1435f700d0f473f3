from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils.functional import cached_property

UINT256_MAX = 2 ** 256 - 1


class BaseUnitsField(models.DecimalField):
    """Integer amount of base units (wei-equivalent) stored as NUMERIC(78, 0).

    78 digits hold any uint256 value. Values come back from the database as
    ``int`` so settlement code never mixes Decimal and int arithmetic.

    SQLite has no exact 78-digit numeric type and Django reads its decimals
    through a 15-digit float context, so on that vendor the column is text.
    Amounts are only compared for equality in SQL, never ordered or summed.
    """

    description = 'Amount in base units'

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('max_digits', 78)
        kwargs.setdefault('decimal_places', 0)
        super().__init__(*args, **kwargs)

    def get_internal_type(self):
        # Not 'DecimalField', so backends skip their float-based decimal converters.
        return 'BaseUnitsField'

    def db_type(self, connection):
        if connection.vendor == 'sqlite':
            return 'text'
        return f'numeric({self.max_digits}, 0)'

    @cached_property
    def validators(self):
        return [
            *self.default_validators,
            *self._validators,
            MinValueValidator(0),
            MaxValueValidator(UINT256_MAX),
        ]

    def from_db_value(self, value, expression, connection):
        if value is None:
            return value
        return int(value)

    def to_python(self, value):
        if value is None or isinstance(value, int):
            return value
        value = super().to_python(value)
        return int(value)

    def get_prep_value(self, value):
        value = super().get_prep_value(value)
        if isinstance(value, int):
            return Decimal(value)
        return value

    def get_db_prep_value(self, value, connection, prepared=False):
        if not prepared:
            value = self.get_prep_value(value)
        if value is None or hasattr(value, 'as_sql'):
            return value
        if connection.vendor == 'sqlite':
            return str(int(value))
        return connection.ops.adapt_decimalfield_value(value, self.max_digits, self.decimal_places)
