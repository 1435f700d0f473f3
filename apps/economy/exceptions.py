"""Rejections raised by the claim engine and the refund pipeline.

Every ``SettlementError`` carries a machine-readable ``reason`` and the HTTP
status the API answers with. They are raised before any mutation commits.
"""


class SettlementError(Exception):
    status_code = 400

    def __init__(self, reason, message='', **details):
        super().__init__(message or reason)
        self.reason = reason
        self.message = message or reason
        self.details = details

    def as_dict(self):
        payload = {'error': self.reason, 'message': self.message}
        payload.update(self.details)
        return payload


class ValidationFailed(SettlementError):
    status_code = 400


class Forbidden(SettlementError):
    status_code = 403


class NotFound(SettlementError):
    status_code = 404


class Conflict(SettlementError):
    """Already claimed, already refunded, or a concurrent attempt won."""
    status_code = 400


class InvariantViolation(SettlementError):
    """A payout would break the maximum-payout bound."""
    status_code = 400


class PayoutFailed(SettlementError):
    status_code = 500

    @classmethod
    def from_ledger_error(cls, exc, **details):
        """Treasury shortfall, unknown outcome and submission failures get distinct reasons."""
        from apps.treasury.exceptions import InsufficientTreasuryFunds, PayoutPending

        if isinstance(exc, InsufficientTreasuryFunds):
            return cls('treasury_insufficient_funds', 'Treasury cannot cover this payout right now.', **details)
        if isinstance(exc, PayoutPending):
            return cls('payout_pending', 'Payout was sent but is not confirmed yet.',
                       txHash=exc.tx_hash, **details)
        return cls('payout_failed', f'Payout failed: {exc}', **details)


class LedgerUnavailable(SettlementError):
    status_code = 503
