"""Treasury wallet client for the external value-transfer network.

Payouts are ERC-20 ``transfer`` calls signed by the treasury key. The client
keeps no settlement state: a transaction hash is the only proof that money
moved, and the callers decide what to record.
"""
from __future__ import annotations

import functools
import logging
import threading

from django.conf import settings
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from .exceptions import (
    InsufficientTreasuryFunds,
    InvalidWalletAddress,
    LedgerError,
    PayoutPending,
    PayoutSubmissionError,
    TransactionReverted,
    TreasuryNotConfigured,
)

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        'name': 'transfer',
        'type': 'function',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'to', 'type': 'address'},
            {'name': 'amount', 'type': 'uint256'},
        ],
        'outputs': [{'name': '', 'type': 'bool'}],
    },
    {
        'name': 'balanceOf',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [{'name': 'account', 'type': 'address'}],
        'outputs': [{'name': '', 'type': 'uint256'}],
    },
    {
        'name': 'Transfer',
        'type': 'event',
        'anonymous': False,
        'inputs': [
            {'name': 'from', 'type': 'address', 'indexed': True},
            {'name': 'to', 'type': 'address', 'indexed': True},
            {'name': 'value', 'type': 'uint256', 'indexed': False},
        ],
    },
]

# 0.1% tolerance on verified deposits (gas / rounding on the sender side).
DEPOSIT_TOLERANCE_DIVISOR = 1000
DEFAULT_RECEIPT_TIMEOUT = 120
NONCE_RETRIES = 3
NONCE_CONFLICT_MARKERS = ('nonce too low', 'replacement transaction underpriced')


def _is_nonce_conflict(exc):
    message = str(exc).lower()
    return any(marker in message for marker in NONCE_CONFLICT_MARKERS)


class LedgerClient:
    """Send payouts, read the treasury balance and verify inbound deposits.

    One instance is shared by every request worker. The only mutable state is
    the signer's nonce sequence, so submissions are serialized with a lock;
    reads run concurrently. The lock covers one process only: deployments
    should route payouts through a single process per treasury key. A nonce
    taken by another sender is detected from the node's rejection and the
    transfer is re-signed with a fresh nonce, up to ``NONCE_RETRIES`` times.
    """

    def __init__(self, rpc_url=None, private_key=None, token_address=None,
                 receipt_timeout=DEFAULT_RECEIPT_TIMEOUT, web3=None, account=None):
        if web3 is None:
            if not rpc_url:
                raise TreasuryNotConfigured('TREASURY_RPC_URL is not configured.')
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': 30}))
        if account is None:
            if not private_key:
                raise TreasuryNotConfigured('TREASURY_PRIVATE_KEY is not configured.')
            account = Account.from_key(private_key)
        if not token_address or not Web3.is_address(token_address):
            raise TreasuryNotConfigured(f'Invalid TREASURY_TOKEN_ADDRESS: {token_address!r}')

        self.web3 = web3
        self.account = account
        self.token_address = Web3.to_checksum_address(token_address)
        self.token = web3.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self.receipt_timeout = receipt_timeout
        self._submit_lock = threading.Lock()

        logger.info('Ledger client ready: treasury=%s token=%s', self.treasury_address, self.token_address)

    @property
    def treasury_address(self) -> str:
        return self.account.address

    def get_balance(self) -> int:
        """Treasury token balance in base units."""
        try:
            return int(self.token.functions.balanceOf(self.treasury_address).call())
        except Exception as exc:
            raise LedgerError(f'Failed to read treasury balance: {exc}') from exc

    def send_payout(self, wallet: str, amount: int) -> str:
        """Transfer ``amount`` base units to ``wallet`` and wait for the receipt.

        Raises ``InsufficientTreasuryFunds`` before anything is submitted when
        the treasury cannot cover the amount, and ``PayoutSubmissionError``
        when nothing reached the network. Once the transaction is broadcast,
        a missing receipt raises ``PayoutPending`` carrying the hash, since the
        transfer may still land; a failed one raises ``TransactionReverted``.
        """
        if not Web3.is_address(wallet):
            raise InvalidWalletAddress(f'Invalid wallet address: {wallet}')
        if amount <= 0:
            raise PayoutSubmissionError('Payout amount must be positive.')

        recipient = Web3.to_checksum_address(wallet)
        balance = self.get_balance()
        if balance < amount:
            raise InsufficientTreasuryFunds(required=amount, available=balance)

        logger.info('Sending payout: amount=%d to=%s', amount, recipient)
        tx_hash = self._submit_transfer(recipient, amount)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info('Payout submitted: tx=%s', tx_hex)

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as exc:
            logger.warning('Payout receipt timed out: tx=%s', tx_hex)
            raise PayoutPending(tx_hex, 'timed out waiting for receipt') from exc
        except Exception as exc:
            logger.warning('Payout receipt unavailable: tx=%s error=%s', tx_hex, exc)
            raise PayoutPending(tx_hex, f'failed to fetch receipt: {exc}') from exc

        if receipt['status'] == 0:
            raise TransactionReverted(tx_hex)

        confirmed = Web3.to_hex(receipt['transactionHash'])
        logger.info('Payout confirmed: tx=%s amount=%d to=%s', confirmed, amount, recipient)
        return confirmed

    def _submit_transfer(self, recipient, amount):
        # A stale pending nonce means another sender used it; re-read and re-sign.
        with self._submit_lock:
            for attempt in range(1, NONCE_RETRIES + 1):
                try:
                    nonce = self.web3.eth.get_transaction_count(self.treasury_address, 'pending')
                    tx = self.token.functions.transfer(recipient, amount).build_transaction({
                        'from': self.treasury_address,
                        'nonce': nonce,
                    })
                    signed = self.account.sign_transaction(tx)
                    return self.web3.eth.send_raw_transaction(signed.raw_transaction)
                except Exception as exc:
                    if attempt < NONCE_RETRIES and _is_nonce_conflict(exc):
                        logger.warning('Nonce conflict on payout, retrying: attempt=%d error=%s', attempt, exc)
                        continue
                    raise PayoutSubmissionError(f'Failed to submit payout: {exc}') from exc

    def verify_deposit(self, tx_hash: str, expected_amount: int, expected_recipient: str | None = None) -> bool:
        """Check that ``tx_hash`` moved ``expected_amount`` tokens to the recipient.

        The recipient defaults to the treasury. Amounts may differ by at most
        0.1%; recipient, token contract and success status must match exactly.
        Network failures raise ``LedgerError`` rather than returning False.
        """
        recipient = (expected_recipient or self.treasury_address).lower()

        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
            tx = self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            logger.warning('Deposit not found: tx=%s', tx_hash)
            return False
        except Exception as exc:
            raise LedgerError(f'Failed to look up deposit {tx_hash}: {exc}') from exc

        if receipt['status'] == 0:
            logger.warning('Deposit failed on-chain: tx=%s', tx_hash)
            return False

        if (tx.get('to') or '').lower() != self.token_address.lower():
            logger.warning('Deposit not sent to token contract: tx=%s to=%s', tx_hash, tx.get('to'))
            return False

        transfers = [
            event for event in self.token.events.Transfer().process_receipt(receipt, errors=DISCARD)
            if event['address'].lower() == self.token_address.lower()
        ]
        if not transfers:
            logger.warning('No Transfer event in deposit: tx=%s', tx_hash)
            return False

        tolerance = expected_amount // DEPOSIT_TOLERANCE_DIVISOR
        for event in transfers:
            if event['args']['to'].lower() != recipient:
                continue
            if abs(int(event['args']['value']) - expected_amount) <= tolerance:
                logger.info('Deposit verified: tx=%s amount=%d', tx_hash, expected_amount)
                return True

        logger.warning(
            'Deposit mismatch: tx=%s expected_amount=%d expected_to=%s',
            tx_hash, expected_amount, recipient,
        )
        return False


@functools.lru_cache(maxsize=1)
def get_ledger_client() -> LedgerClient:
    """Shared client built from settings."""
    return LedgerClient(
        rpc_url=getattr(settings, 'TREASURY_RPC_URL', ''),
        private_key=getattr(settings, 'TREASURY_PRIVATE_KEY', ''),
        token_address=getattr(settings, 'TREASURY_TOKEN_ADDRESS', ''),
        receipt_timeout=getattr(settings, 'TREASURY_RECEIPT_TIMEOUT', DEFAULT_RECEIPT_TIMEOUT),
    )
