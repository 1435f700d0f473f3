from unittest.mock import MagicMock

from django.test import SimpleTestCase
from web3.exceptions import TimeExhausted, TransactionNotFound

from apps.treasury.client import NONCE_RETRIES, LedgerClient
from apps.treasury.exceptions import (
    InsufficientTreasuryFunds,
    InvalidWalletAddress,
    LedgerError,
    PayoutPending,
    PayoutSubmissionError,
    TransactionReverted,
    TreasuryNotConfigured,
)

TOKEN = '0x2cfc85d8e48f8eab294be644d9e25c3030863003'
TREASURY = '0x1111111111111111111111111111111111111111'
WINNER = '0x2222222222222222222222222222222222222222'
TX_BYTES = b'\xab' * 32
TX_HEX = '0x' + 'ab' * 32


def make_client(balance=10 ** 24):
    web3 = MagicMock()
    account = MagicMock(address=TREASURY)
    account.sign_transaction.return_value = MagicMock(raw_transaction=b'signed')
    client = LedgerClient(token_address=TOKEN, web3=web3, account=account)
    client.token.functions.balanceOf.return_value.call.return_value = balance
    client.token.functions.transfer.return_value.build_transaction.return_value = {'nonce': 7}
    web3.eth.get_transaction_count.return_value = 7
    web3.eth.send_raw_transaction.return_value = TX_BYTES
    web3.eth.wait_for_transaction_receipt.return_value = {'status': 1, 'transactionHash': TX_BYTES}
    return client


class LedgerClientConfigTest(SimpleTestCase):
    def test_missing_rpc_url(self):
        with self.assertRaises(TreasuryNotConfigured):
            LedgerClient(rpc_url='', private_key='0x' + '1' * 64, token_address=TOKEN)

    def test_missing_private_key(self):
        with self.assertRaises(TreasuryNotConfigured):
            LedgerClient(web3=MagicMock(), private_key='', token_address=TOKEN)

    def test_invalid_token_address(self):
        with self.assertRaises(TreasuryNotConfigured):
            LedgerClient(web3=MagicMock(), account=MagicMock(address=TREASURY), token_address='0x123')


class SendPayoutTest(SimpleTestCase):
    def test_successful_payout_returns_receipt_hash(self):
        client = make_client()
        tx_hash = client.send_payout(WINNER, 194000)
        self.assertEqual(tx_hash, TX_HEX)
        args, _ = client.token.functions.transfer.call_args
        self.assertEqual(args[0].lower(), WINNER)
        self.assertEqual(args[1], 194000)
        client.web3.eth.send_raw_transaction.assert_called_once_with(b'signed')

    def test_uses_pending_nonce(self):
        client = make_client()
        client.send_payout(WINNER, 1)
        client.web3.eth.get_transaction_count.assert_called_once_with(TREASURY, 'pending')

    def test_invalid_wallet(self):
        client = make_client()
        with self.assertRaises(InvalidWalletAddress):
            client.send_payout('not-a-wallet', 100)
        client.web3.eth.send_raw_transaction.assert_not_called()

    def test_insufficient_balance_checked_before_submit(self):
        client = make_client(balance=100)
        with self.assertRaises(InsufficientTreasuryFunds) as ctx:
            client.send_payout(WINNER, 194000)
        self.assertEqual(ctx.exception.required, 194000)
        self.assertEqual(ctx.exception.available, 100)
        client.web3.eth.send_raw_transaction.assert_not_called()

    def test_submission_failure(self):
        client = make_client()
        client.web3.eth.send_raw_transaction.side_effect = ValueError('connection refused')
        with self.assertRaises(PayoutSubmissionError):
            client.send_payout(WINNER, 100)
        client.web3.eth.send_raw_transaction.assert_called_once()

    def test_stale_nonce_resigned_with_fresh_one(self):
        client = make_client()
        client.web3.eth.get_transaction_count.side_effect = [7, 8]
        client.web3.eth.send_raw_transaction.side_effect = [ValueError({'message': 'nonce too low'}), TX_BYTES]
        self.assertEqual(client.send_payout(WINNER, 100), TX_HEX)
        self.assertEqual(client.web3.eth.send_raw_transaction.call_count, 2)
        nonces = [call.args[0]['nonce'] for call in
                  client.token.functions.transfer.return_value.build_transaction.call_args_list]
        self.assertEqual(nonces, [7, 8])

    def test_nonce_conflict_gives_up_after_retries(self):
        client = make_client()
        client.web3.eth.send_raw_transaction.side_effect = ValueError('nonce too low')
        with self.assertRaises(PayoutSubmissionError):
            client.send_payout(WINNER, 100)
        self.assertEqual(client.web3.eth.send_raw_transaction.call_count, NONCE_RETRIES)

    def test_receipt_timeout_is_pending(self):
        client = make_client()
        client.web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted('timeout')
        with self.assertRaises(PayoutPending) as ctx:
            client.send_payout(WINNER, 100)
        self.assertEqual(ctx.exception.tx_hash, TX_HEX)
        self.assertNotIsInstance(ctx.exception, PayoutSubmissionError)

    def test_receipt_fetch_error_is_pending(self):
        client = make_client()
        client.web3.eth.wait_for_transaction_receipt.side_effect = ConnectionError('rpc down')
        with self.assertRaises(PayoutPending) as ctx:
            client.send_payout(WINNER, 100)
        self.assertEqual(ctx.exception.tx_hash, TX_HEX)

    def test_reverted_transaction(self):
        client = make_client()
        client.web3.eth.wait_for_transaction_receipt.return_value = {'status': 0, 'transactionHash': TX_BYTES}
        with self.assertRaises(TransactionReverted) as ctx:
            client.send_payout(WINNER, 100)
        self.assertEqual(ctx.exception.tx_hash, TX_HEX)

    def test_balance_read_failure_is_ledger_error(self):
        client = make_client()
        client.token.functions.balanceOf.return_value.call.side_effect = ConnectionError('rpc down')
        with self.assertRaises(LedgerError):
            client.get_balance()


class VerifyDepositTest(SimpleTestCase):
    def setUp(self):
        self.client_ = make_client()
        self.client_.web3.eth.get_transaction_receipt.return_value = {'status': 1}
        self.client_.web3.eth.get_transaction.return_value = {'to': TOKEN}

    def transfers(self, *events):
        self.client_.token.events.Transfer.return_value.process_receipt.return_value = [
            {'address': TOKEN, 'args': {'to': to, 'value': value}} for to, value in events
        ]

    def test_exact_amount(self):
        self.transfers((TREASURY, 100000))
        self.assertTrue(self.client_.verify_deposit(TX_HEX, 100000))

    def test_within_tolerance(self):
        self.transfers((TREASURY, 99950))
        self.assertTrue(self.client_.verify_deposit(TX_HEX, 100000))

    def test_outside_tolerance(self):
        self.transfers((TREASURY, 99000))
        self.assertFalse(self.client_.verify_deposit(TX_HEX, 100000))

    def test_wrong_recipient(self):
        self.transfers((WINNER, 100000))
        self.assertFalse(self.client_.verify_deposit(TX_HEX, 100000))

    def test_explicit_recipient(self):
        self.transfers((WINNER, 100000))
        self.assertTrue(self.client_.verify_deposit(TX_HEX, 100000, expected_recipient=WINNER))

    def test_failed_transaction(self):
        self.client_.web3.eth.get_transaction_receipt.return_value = {'status': 0}
        self.assertFalse(self.client_.verify_deposit(TX_HEX, 100000))

    def test_not_sent_to_token_contract(self):
        self.client_.web3.eth.get_transaction.return_value = {'to': WINNER}
        self.transfers((TREASURY, 100000))
        self.assertFalse(self.client_.verify_deposit(TX_HEX, 100000))

    def test_unknown_transaction(self):
        self.client_.web3.eth.get_transaction_receipt.side_effect = TransactionNotFound('missing')
        self.assertFalse(self.client_.verify_deposit(TX_HEX, 100000))

    def test_network_error_raises(self):
        self.client_.web3.eth.get_transaction_receipt.side_effect = ConnectionError('rpc down')
        with self.assertRaises(LedgerError):
            self.client_.verify_deposit(TX_HEX, 100000)
