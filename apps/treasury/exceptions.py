class LedgerError(Exception):
    """Any failure talking to the value-transfer network."""


class InvalidWalletAddress(LedgerError):
    pass


class InsufficientTreasuryFunds(LedgerError):
    """Raised before submission; nothing was sent."""

    def __init__(self, required, available):
        super().__init__(
            f'Insufficient treasury balance. Required: {required}, Available: {available}'
        )
        self.required = required
        self.available = available


class PayoutSubmissionError(LedgerError):
    """Network or signing failure while submitting or awaiting a payout."""


class TransactionReverted(LedgerError):
    def __init__(self, tx_hash):
        super().__init__(f'Transaction {tx_hash} reverted on-chain')
        self.tx_hash = tx_hash


class TreasuryNotConfigured(LedgerError):
    pass


class PayoutPending(LedgerError):
    """The transfer was broadcast but its receipt never arrived; it may still land."""

    def __init__(self, tx_hash, detail=''):
        message = f'Outcome of transaction {tx_hash} is unknown'
        if detail:
            message = f'{message}: {detail}'
        super().__init__(message)
        self.tx_hash = tx_hash
