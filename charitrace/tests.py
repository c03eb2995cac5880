from django.apps import apps
from django.test import TestCase, Client, override_settings
from django.urls import reverse
from django.utils import timezone
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.contrib.auth.models import User
from django.db import OperationalError
from unittest.mock import patch, MagicMock, mock_open

from .blockchain import ChainClient, ChainError, ChainSubmissionError
from .models import BlockchainVerification, Charity, Donation, Project, is_placeholder_hash
from .utils import generate_transaction_id
from .validators import (
    PasswordStrengthValidator,
    parse_donation_amount,
    validate_contract_address,
    validate_currency_code,
)
from .verification import (
    DonationNotFound,
    LedgerReadError,
    LedgerWriteError,
    VerificationLedger,
    VerificationService,
)

import io
import json
import smtplib
from datetime import date
from decimal import Decimal

import stripe

CHAIN_OK = {'transaction_hash': '0xabc', 'block_number': 100, 'gas_used': '21000'}
CONTRACT = '0x' + '1' * 40
PRIVATE_KEY = '0x' + '11' * 32


class FailingLedger(VerificationLedger):
    """Ledger whose inserts fail for the given donation ids."""

    def __init__(self, failing_ids):
        self.failing_ids = set(failing_ids)

    def create_record(self, donation, **fields):
        if donation.id in self.failing_ids:
            raise LedgerWriteError("database unavailable")
        return super().create_record(donation, **fields)


class UnreadableLedger(VerificationLedger):
    """Ledger whose record lookups hit a database error for the given donation ids."""

    def __init__(self, failing_ids):
        self.failing_ids = set(failing_ids)

    def get_record(self, donation_id):
        if donation_id in self.failing_ids:
            with patch.object(BlockchainVerification.objects, 'filter', side_effect=OperationalError('connection lost')):
                return super().get_record(donation_id)
        return super().get_record(donation_id)


class ExplodingLedger(VerificationLedger):
    """Ledger whose in-place updates raise a non-database error for the given donation ids."""

    def __init__(self, failing_ids):
        self.failing_ids = set(failing_ids)

    def update_unverified_record(self, record, **fields):
        if record.donation_id in self.failing_ids:
            raise RuntimeError('disk full')
        return super().update_unverified_record(record, **fields)


class BaseTestCase(TestCase):
    def setUp(self):
        """Create a client, a donor, a charity manager, a charity and a project."""
        self.client = Client()
        self.donor = User.objects.create_user(
            username='donor@example.com', email='donor@example.com', password='pass12345',
            first_name='Dana', last_name='Donor',
        )
        self.manager = User.objects.create_user(
            username='manager@example.com', email='manager@example.com', password='pass12345',
        )
        self.charity = Charity.objects.create(
            name='Clean Water',
            email='contact@cleanwater.org',
            registration_id='RO-1234',
            category=Charity.Category.HUMANITARIAN,
            manager=self.manager,
        )
        self.project = Project.objects.create(
            charity=self.charity,
            title='Village well',
            goal=Decimal('1000.00'),
            start_date=date(2025, 1, 1),
        )

    def make_donation(self, pk=None, status=Donation.PaymentStatus.SUCCEEDED, **kwargs):
        """Helper: create a donation; transaction ids follow the pk when one is given."""
        fields = {
            'amount': Decimal('25.00'),
            'currency': 'USD',
            'transaction_id': f'don_{pk}' if pk else generate_transaction_id(),
            'payment_intent_id': 'pi_123',
            'payment_status': status,
            'donor': self.donor,
            'charity': self.charity,
        }
        fields.update(kwargs)
        if pk is not None:
            fields['pk'] = pk
        return Donation.objects.create(**fields)

    def make_record(self, donation, verified=True, transaction_hash=None):
        return BlockchainVerification.objects.create(
            donation=donation,
            transaction_hash=transaction_hash or ('0xdef' if verified else 'failed_deadbeef'),
            block_number=7 if verified else 0,
            timestamp=timezone.now(),
            verified=verified,
            state=BlockchainVerification.State.VERIFIED if verified else BlockchainVerification.State.PENDING_RETRY,
        )

    def install_service(self, ledger=None):
        """Helper: swap the app's verification service for one with a mock chain client."""
        self.chain = MagicMock()
        config = apps.get_app_config('charitrace')
        self.addCleanup(setattr, config, 'verification_service', config.verification_service)
        config.verification_service = VerificationService(self.chain, ledger or VerificationLedger())
        return config.verification_service


class ModelTests(BaseTestCase):
    def test_placeholder_hashes(self):
        """failed_/pending_ hashes are placeholders, mined hashes are not."""
        self.assertTrue(is_placeholder_hash('failed_abc'))
        self.assertTrue(is_placeholder_hash('pending_abc'))
        self.assertFalse(is_placeholder_hash('0xabc'))
        self.assertFalse(is_placeholder_hash(''))

    def test_percent_funded(self):
        """percent_funded rounds current/goal to a whole percentage."""
        self.project.current_amount = Decimal('255.00')
        self.assertEqual(self.project.percent_funded(), 26)

    def test_chain_payload(self):
        """chain_payload exposes the public donation fields mirrored on-chain."""
        donation = self.make_donation(pk=5, project=self.project, anonymous=True)
        payload = donation.chain_payload()
        self.assertEqual(payload['transaction_id'], 'don_5')
        self.assertEqual(payload['charity_id'], self.charity.id)
        self.assertEqual(payload['project_id'], self.project.id)
        self.assertTrue(payload['anonymous'])

    def test_donor_hidden_when_anonymous(self):
        """donor_display_name hides anonymous donors."""
        self.assertEqual(self.make_donation(anonymous=True).donor_display_name(), 'Anonymous')
        self.assertEqual(self.make_donation().donor_display_name(), 'Dana Donor')

    def test_one_record_per_donation(self):
        """The database refuses a second verification record for a donation."""
        from django.db import IntegrityError, transaction
        donation = self.make_donation()
        self.make_record(donation)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.make_record(donation, verified=False)


class ValidatorsTests(TestCase):
    def test_currency_code(self):
        """Three-letter codes are accepted in any case, everything else rejected."""
        validate_currency_code('USD')
        validate_currency_code('ron')
        for bad in ('', 'US', 'USDT', '12$'):
            with self.assertRaises(ValidationError):
                validate_currency_code(bad)

    def test_parse_donation_amount(self):
        """Amounts are normalised to cents; zero, negative and junk are rejected."""
        self.assertEqual(parse_donation_amount('10.5'), Decimal('10.50'))
        self.assertEqual(parse_donation_amount(3), Decimal('3.00'))
        for bad in (None, '', 'abc', '0', '-1', '0.001', 'NaN', 'Infinity'):
            with self.assertRaises(ValidationError):
                parse_donation_amount(bad)

    def test_contract_address(self):
        """Contract addresses must be present and well-formed."""
        validate_contract_address(CONTRACT)
        for bad in ('', None, '0x123', 'not-an-address'):
            with self.assertRaises(ValidationError):
                validate_contract_address(bad)

    def test_password_strength(self):
        """Passwords need length, both cases, a digit and a special character."""
        validator = PasswordStrengthValidator()
        validator.validate('Str0ng!Passw0rd')
        with self.assertRaises(ValidationError) as ctx:
            validator.validate('weakpass')
        self.assertEqual(len(ctx.exception.messages), 3)


class ChainClientTests(TestCase):
    def make_client(self):
        client = ChainClient('http://127.0.0.1:8545', CONTRACT, PRIVATE_KEY, chain_id=31337)
        client.web3 = MagicMock()
        client.contract = MagicMock()
        client.web3.eth.send_raw_transaction.return_value = bytes.fromhex('ab' * 32)
        return client

    def receipt(self, status=1):
        return {'status': status, 'transactionHash': bytes.fromhex('ab' * 32), 'blockNumber': 100, 'gasUsed': 21000}

    def payload(self):
        return {
            'transaction_id': 'don_1', 'donor_id': 3, 'charity_id': 4, 'project_id': None,
            'amount': Decimal('25.00'), 'currency': 'USD', 'anonymous': False,
        }

    def test_configured_client(self):
        """A client with an RPC URL, contract address and key is configured."""
        client = ChainClient('http://127.0.0.1:8545', CONTRACT, PRIVATE_KEY)
        self.assertTrue(client.is_configured)
        self.assertIsNone(client.configuration_error)

    def test_unconfigured_client_fails_calls(self):
        """Without a contract, submissions raise ChainSubmissionError and reads ChainError."""
        client = ChainClient('http://127.0.0.1:8545', '', PRIVATE_KEY)
        self.assertFalse(client.is_configured)
        with self.assertRaises(ChainSubmissionError):
            client.record_donation(self.payload())
        with self.assertRaises(ChainError):
            client.get_donation('don_1')

    def test_record_donation_success(self):
        """A mined transaction returns hash, block number and gas used."""
        client = self.make_client()
        client.web3.eth.wait_for_transaction_receipt.return_value = self.receipt()
        result = client.record_donation(self.payload())
        self.assertEqual(result, {'transaction_hash': '0x' + 'ab' * 32, 'block_number': 100, 'gas_used': '21000'})
        args = client.contract.functions.recordDonation.call_args[0]
        self.assertEqual(args[:4], ('don_1', '3', '4', ''))
        self.assertEqual(args[4], 25 * 10 ** 18)
        self.assertEqual(args[5:], ('USD', False))

    def test_record_donation_reverted(self):
        """A reverted transaction is a submission failure."""
        client = self.make_client()
        client.web3.eth.wait_for_transaction_receipt.return_value = self.receipt(status=0)
        with self.assertRaises(ChainSubmissionError):
            client.record_donation(self.payload())

    def test_record_donation_rpc_failure(self):
        """Network errors while submitting become ChainSubmissionError."""
        client = self.make_client()
        client.contract.functions.recordDonation.return_value.build_transaction.side_effect = ConnectionError('refused')
        with self.assertRaises(ChainSubmissionError):
            client.record_donation(self.payload())

    def test_get_donation(self):
        """Contract amounts are converted back from 18-decimal units."""
        client = self.make_client()
        client.contract.functions.getDonation.return_value.call.return_value = (
            '3', '4', '', 25 * 10 ** 18, 'USD', 1700000000, False,
        )
        donation = client.get_donation('don_1')
        self.assertEqual(donation['amount'], '25')
        self.assertEqual(donation['charity_id'], '4')
        self.assertEqual(donation['timestamp'], '2023-11-14T22:13:20+00:00')

    def test_get_donations_by_charity(self):
        """Listing a charity's donations reads each one back from the contract."""
        client = self.make_client()
        client.contract.functions.getDonationsByCharity.return_value.call.return_value = ['don_1', 'don_2']
        client.contract.functions.getDonation.return_value.call.return_value = (
            '3', '4', '', 10 ** 18, 'USD', 0, True,
        )
        donations = client.get_donations_by_charity(4)
        self.assertEqual([d['transaction_id'] for d in donations], ['don_1', 'don_2'])
        self.assertIsNone(donations[0]['timestamp'])
        client.contract.functions.getDonationsByCharity.assert_called_once_with('4')

    def test_get_charity_flow(self):
        """Fund flow totals are returned as decimal strings."""
        client = self.make_client()
        client.contract.functions.getCharityFlow.return_value.call.return_value = (
            10 * 10 ** 18, 4 * 10 ** 18, 6 * 10 ** 18,
        )
        flow = client.get_charity_flow(4)
        self.assertEqual((flow['total_received'], flow['total_disbursed'], flow['balance']), ('10', '4', '6'))


class VerificationServiceTests(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.service = self.install_service()

    def test_success_creates_verified_record(self):
        """Donation 42 recorded on-chain gets a verified record with the mined hash."""
        self.make_donation(pk=42)
        self.chain.record_donation.return_value = CHAIN_OK
        record = self.service.verify_donation(42)
        self.assertTrue(record.verified)
        self.assertEqual(record.state, BlockchainVerification.State.VERIFIED)
        self.assertEqual(record.transaction_hash, '0xabc')
        self.assertEqual(record.block_number, 100)
        self.assertEqual(BlockchainVerification.objects.filter(donation_id=42).count(), 1)

    def test_chain_failure_records_pending_retry(self):
        """A failed submission is stored as pending retry with a placeholder hash."""
        self.make_donation(pk=42)
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')
        record = self.service.verify_donation(42)
        self.assertFalse(record.verified)
        self.assertEqual(record.state, BlockchainVerification.State.PENDING_RETRY)
        self.assertTrue(record.transaction_hash.startswith('failed_'))
        self.assertEqual(record.block_number, 0)

    def test_retry_updates_same_record(self):
        """A later successful attempt promotes the pending record in place."""
        self.make_donation(pk=42)
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')
        pending = self.service.verify_donation(42)

        self.chain.record_donation.side_effect = None
        self.chain.record_donation.return_value = CHAIN_OK
        verified = self.service.verify_donation(42)

        self.assertEqual(verified.pk, pending.pk)
        self.assertTrue(verified.verified)
        self.assertEqual(verified.transaction_hash, '0xabc')
        self.assertEqual(BlockchainVerification.objects.count(), 1)

    def test_failed_retry_restamps_placeholder(self):
        """Failing again keeps the record pending with a fresh placeholder."""
        donation = self.make_donation(pk=42)
        old = self.make_record(donation, verified=False)
        self.chain.record_donation.side_effect = ChainSubmissionError('still down')
        record = self.service.verify_donation(42)
        self.assertEqual(record.pk, old.pk)
        self.assertFalse(record.verified)
        self.assertNotEqual(record.transaction_hash, old.transaction_hash)
        self.assertTrue(record.transaction_hash.startswith('failed_'))

    def test_verified_donation_is_not_resubmitted(self):
        """Verifying twice submits once and returns the same record."""
        self.make_donation(pk=42)
        self.chain.record_donation.return_value = CHAIN_OK
        first = self.service.verify_donation(42)
        second = self.service.verify_donation(42)
        self.assertEqual(first.pk, second.pk)
        self.chain.record_donation.assert_called_once()

    def test_unknown_donation(self):
        """An unknown id raises DonationNotFound without touching the chain."""
        with self.assertRaises(DonationNotFound) as ctx:
            self.service.verify_donation(999)
        self.assertEqual(str(ctx.exception), 'Donation with ID 999 not found')
        self.chain.record_donation.assert_not_called()

    def test_concurrent_success_keeps_single_record(self):
        """If another writer verifies first, its record wins and no duplicate appears."""
        donation = self.make_donation(pk=42)

        def competing_writer(payload):
            self.make_record(donation, verified=True, transaction_hash='0xwinner')
            return CHAIN_OK

        self.chain.record_donation.side_effect = competing_writer
        record = self.service.verify_donation(42)
        self.assertEqual(BlockchainVerification.objects.filter(donation=donation).count(), 1)
        self.assertTrue(record.verified)
        self.assertEqual(record.transaction_hash, '0xwinner')

    def test_concurrent_failure_never_downgrades(self):
        """A failing attempt racing a successful one leaves the verified record alone."""
        donation = self.make_donation(pk=42)

        def competing_writer(payload):
            self.make_record(donation, verified=True, transaction_hash='0xwinner')
            raise ChainSubmissionError('RPC timeout')

        self.chain.record_donation.side_effect = competing_writer
        record = self.service.verify_donation(42)
        self.assertTrue(record.verified)
        self.assertEqual(BlockchainVerification.objects.get(donation=donation).transaction_hash, '0xwinner')

    def test_conditional_update_skips_verified_rows(self):
        """update_unverified_record never overwrites a verified record."""
        record = self.make_record(self.make_donation(), verified=True)
        current = VerificationLedger().update_unverified_record(
            record, transaction_hash='failed_x', verified=False, state=BlockchainVerification.State.PENDING_RETRY,
        )
        self.assertTrue(current.verified)
        self.assertEqual(current.transaction_hash, '0xdef')

    def test_fallback_write_failure_raises_chain_error(self):
        """When the pending record cannot be written, the chain error surfaces."""
        service = self.install_service(FailingLedger([42]))
        self.make_donation(pk=42)
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')
        with self.assertRaises(ChainSubmissionError):
            service.verify_donation(42)
        self.assertFalse(BlockchainVerification.objects.exists())

    def test_success_write_failure_raises_ledger_error(self):
        """A mined donation whose record cannot be stored raises LedgerWriteError."""
        service = self.install_service(FailingLedger([42]))
        self.make_donation(pk=42)
        self.chain.record_donation.return_value = CHAIN_OK
        with self.assertRaises(LedgerWriteError):
            service.verify_donation(42)

    def test_batch_continues_past_failures(self):
        """Batch [1, 2, 3] reports donation 2 as failed and verifies the others."""
        service = self.install_service(FailingLedger([2]))
        for pk in (1, 2, 3):
            self.make_donation(pk=pk)

        def record(payload):
            if payload['transaction_id'] == 'don_2':
                raise ChainSubmissionError('RPC timeout')
            return CHAIN_OK

        self.chain.record_donation.side_effect = record
        results = service.batch_verify_donations([1, 2, 3])

        self.assertEqual([r['donation_id'] for r in results], [1, 2, 3])
        self.assertEqual([r['success'] for r in results], [True, False, True])
        self.assertIn('RPC timeout', results[1]['error'])
        self.assertTrue(results[0]['verification']['verified'])
        self.assertTrue(results[2]['verification']['verified'])

    def test_batch_reports_unknown_ids(self):
        """Unknown ids in a batch become failed entries."""
        self.make_donation(pk=1)
        self.chain.record_donation.return_value = CHAIN_OK
        results = self.service.batch_verify_donations([1, 999])
        self.assertTrue(results[0]['success'])
        self.assertEqual(results[1], {'donation_id': 999, 'success': False, 'error': 'Donation with ID 999 not found'})

    def test_batch_survives_unexpected_chain_exception(self):
        """Any exception from the chain client leaves donation 2 pending retry and the batch goes on."""
        for pk in (1, 2, 3):
            self.make_donation(pk=pk)

        def record(payload):
            if payload['transaction_id'] == 'don_2':
                raise RuntimeError('signer exploded')
            return CHAIN_OK

        self.chain.record_donation.side_effect = record
        results = self.service.batch_verify_donations([1, 2, 3])

        self.assertEqual([r['donation_id'] for r in results], [1, 2, 3])
        self.assertEqual([r['success'] for r in results], [True, True, True])
        self.assertFalse(results[1]['verification']['verified'])
        pending = BlockchainVerification.objects.get(donation_id=2)
        self.assertEqual(pending.state, BlockchainVerification.State.PENDING_RETRY)
        self.assertTrue(pending.transaction_hash.startswith('failed_'))
        self.assertTrue(BlockchainVerification.objects.get(donation_id=1).verified)
        self.assertTrue(BlockchainVerification.objects.get(donation_id=3).verified)

    def test_batch_survives_ledger_read_failure(self):
        """A database error while loading donation 2's record fails that entry only."""
        service = self.install_service(UnreadableLedger([2]))
        for pk in (1, 2, 3):
            self.make_donation(pk=pk)
        self.chain.record_donation.return_value = CHAIN_OK

        results = service.batch_verify_donations([1, 2, 3])

        self.assertEqual([r['success'] for r in results], [True, False, True])
        self.assertIn('connection lost', results[1]['error'])
        self.assertFalse(BlockchainVerification.objects.filter(donation_id=2).exists())
        self.assertEqual(self.chain.record_donation.call_count, 2)

    def test_ledger_wraps_database_read_errors(self):
        """OperationalError on a ledger read surfaces as LedgerReadError."""
        ledger = VerificationLedger()
        with patch.object(BlockchainVerification.objects, 'filter', side_effect=OperationalError('connection lost')):
            with self.assertRaises(LedgerReadError):
                ledger.get_record(1)
        with patch.object(Donation.objects, 'select_related', side_effect=OperationalError('connection lost')):
            with self.assertRaises(LedgerReadError):
                ledger.get_donation_by_transaction_id('don_1')

    def test_retry_survives_unexpected_errors(self):
        """An unexpected exception while retrying one donation is counted as failed."""
        service = self.install_service(ExplodingLedger([1]))
        self.make_record(self.make_donation(pk=1), verified=False)
        self.make_record(self.make_donation(pk=2), verified=False)
        self.chain.record_donation.return_value = CHAIN_OK

        result = service.retry_failed_verifications()

        self.assertEqual(result, {'retried': 2, 'successful': 1, 'failed': 1})
        self.assertFalse(BlockchainVerification.objects.get(donation_id=1).verified)
        self.assertTrue(BlockchainVerification.objects.get(donation_id=2).verified)

    def test_verification_status(self):
        """Status reflects whether a record exists and whether it is verified."""
        self.make_donation(pk=1)
        self.make_record(self.make_donation(pk=2), verified=False)
        self.make_record(self.make_donation(pk=3), verified=True)
        self.assertEqual(self.service.get_verification_status(1)['status'], 'NOT_VERIFIED')
        self.assertEqual(self.service.get_verification_status(2)['status'], 'PENDING')
        status = self.service.get_verification_status(3)
        self.assertEqual(status['status'], 'VERIFIED')
        self.assertEqual(status['transaction_hash'], '0xdef')
        with self.assertRaises(DonationNotFound):
            self.service.get_verification_status(999)

    def test_verification_stats(self):
        """Stats count succeeded donations, verified and pending records."""
        donations = [self.make_donation() for _ in range(4)]
        self.make_donation(status=Donation.PaymentStatus.PENDING)
        self.make_record(donations[0], verified=True)
        self.make_record(donations[1], verified=False)
        stats = self.service.get_verification_stats()
        self.assertEqual(stats, {
            'total_donations': 4,
            'verified_count': 1,
            'pending_count': 1,
            'unverified_count': 2,
            'verification_rate': 25.0,
        })

    def test_verification_stats_empty(self):
        """With no donations the verification rate is 0."""
        self.assertEqual(self.service.get_verification_stats()['verification_rate'], 0)

    def test_retry_failed_verifications(self):
        """Only pending records are retried; a retry that fails again counts as failed."""
        self.make_record(self.make_donation(pk=1), verified=False)
        self.make_record(self.make_donation(pk=2), verified=False)
        self.make_record(self.make_donation(pk=3), verified=True)

        def record(payload):
            if payload['transaction_id'] == 'don_2':
                raise ChainSubmissionError('RPC timeout')
            return CHAIN_OK

        self.chain.record_donation.side_effect = record
        result = self.service.retry_failed_verifications()
        self.assertEqual(result, {'retried': 2, 'successful': 1, 'failed': 1})
        self.assertTrue(BlockchainVerification.objects.get(donation_id=1).verified)
        self.assertFalse(BlockchainVerification.objects.get(donation_id=2).verified)
        self.assertEqual(self.chain.record_donation.call_count, 2)

    def test_retry_with_nothing_pending(self):
        """An empty sweep reports zeros."""
        self.assertEqual(self.service.retry_failed_verifications(), {'retried': 0, 'successful': 0, 'failed': 0})

    def test_unverified_donations(self):
        """Succeeded donations without a verified record are listed with their status."""
        self.make_donation(pk=1)
        self.make_record(self.make_donation(pk=2, anonymous=True), verified=False)
        self.make_record(self.make_donation(pk=3), verified=True)
        self.make_donation(pk=4, status=Donation.PaymentStatus.PENDING)

        listed = {d['id']: d for d in self.service.get_unverified_donations()}
        self.assertEqual(set(listed), {1, 2})
        self.assertEqual(listed[1]['verification_status'], 'NOT_STARTED')
        self.assertEqual(listed[2]['verification_status'], 'PENDING')
        self.assertEqual(listed[2]['donor'], {'name': 'Anonymous'})

    def test_reconcile_with_chain_match(self):
        """Matching amount and charity on-chain and in the database report a match."""
        self.make_donation(pk=1)
        self.chain.get_donation.return_value = {
            'transaction_id': 'don_1', 'donor_id': str(self.donor.id), 'charity_id': str(self.charity.id),
            'project_id': '', 'amount': '25', 'currency': 'USD', 'timestamp': None, 'anonymous': False,
        }
        report = self.service.reconcile_with_chain('don_1')
        self.assertTrue(report['found'])
        self.assertTrue(report['match'])
        self.assertEqual(report['database']['id'], 1)

    def test_reconcile_with_chain_mismatch(self):
        """A different on-chain amount is reported as a mismatch."""
        self.make_donation(pk=1)
        self.chain.get_donation.return_value = {
            'donor_id': '', 'charity_id': str(self.charity.id), 'amount': '30', 'currency': 'USD',
        }
        self.assertFalse(self.service.reconcile_with_chain('don_1')['match'])

    def test_reconcile_with_chain_missing(self):
        """An empty contract entry means the donation is not on-chain."""
        self.chain.get_donation.return_value = {'donor_id': '', 'charity_id': '', 'amount': '0'}
        self.assertIsNone(self.service.reconcile_with_chain('don_1'))

    def test_reconcile_reads_through_ledger(self):
        """Reconciliation loads the database row through the ledger."""
        self.make_donation(pk=1)
        self.chain.get_donation.return_value = {
            'donor_id': str(self.donor.id), 'charity_id': str(self.charity.id), 'amount': '25', 'currency': 'USD',
        }
        ledger = self.service.ledger
        with patch.object(ledger, 'get_donation_by_transaction_id', wraps=ledger.get_donation_by_transaction_id) as lookup:
            report = self.service.reconcile_with_chain('don_1')
        lookup.assert_called_once_with('don_1')
        self.assertTrue(report['match'])

    def test_reconcile_ledger_failure(self):
        """A database error during reconciliation raises LedgerReadError."""
        self.chain.get_donation.return_value = {'donor_id': '1', 'charity_id': '1', 'amount': '25'}
        with patch.object(self.service.ledger, 'get_donation_by_transaction_id', side_effect=LedgerReadError('down')):
            with self.assertRaises(LedgerReadError):
                self.service.reconcile_with_chain('don_1')

    def test_error_families(self):
        """Ledger errors are verification errors; chain errors stay in their own family."""
        from .verification import VERIFICATION_FAILURES, LedgerConflict, LedgerError, VerificationError
        self.assertTrue(issubclass(LedgerReadError, LedgerError))
        self.assertTrue(issubclass(LedgerConflict, LedgerWriteError))
        self.assertTrue(issubclass(LedgerError, VerificationError))
        self.assertTrue(issubclass(DonationNotFound, VerificationError))
        self.assertTrue(issubclass(ChainSubmissionError, ChainError))
        self.assertFalse(issubclass(ChainSubmissionError, VerificationError))
        self.assertEqual(set(VERIFICATION_FAILURES), {VerificationError, ChainError})

    def test_app_builds_service(self):
        """The app config carries a VerificationService built at startup."""
        from .apps import get_verification_service
        self.assertIsInstance(get_verification_service(), VerificationService)


class UtilsTests(BaseTestCase):
    @patch('charitrace.utils.stripe.PaymentIntent.create')
    def test_create_payment_intent_uses_cents(self, mock_create):
        """Amounts are sent to Stripe in cents with a lower-case currency."""
        from .utils import create_payment_intent
        create_payment_intent(Decimal('25.50'), 'USD', 'Donation', {'charity_id': '1'})
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['amount'], 2550)
        self.assertEqual(kwargs['currency'], 'usd')

    def test_generate_transaction_id(self):
        """Transaction ids look like don_ followed by 16 hex characters."""
        from .utils import generate_transaction_id
        tx = generate_transaction_id()
        self.assertRegex(tx, r'^don_[0-9a-f]{16}$')
        self.assertNotEqual(tx, generate_transaction_id())

    def test_receipt_url_from_intent(self):
        """Receipt URLs are read from an expanded charge only."""
        from .utils import receipt_url_from_intent
        self.assertEqual(receipt_url_from_intent({'latest_charge': {'receipt_url': 'https://r'}}), 'https://r')
        self.assertIsNone(receipt_url_from_intent({'latest_charge': 'ch_123'}))
        self.assertIsNone(receipt_url_from_intent({}))

    def test_receipt_email_plain(self):
        """Without DKIM settings the receipt goes through Django's mail backend."""
        from .utils import send_donation_receipt
        donation = self.make_donation()
        self.assertTrue(send_donation_receipt(donation))
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['donor@example.com'])
        self.assertIn(donation.transaction_id, mail.outbox[0].body)

    @override_settings(DKIM_SELECTOR='mail', DKIM_DOMAIN='charitrace.org', DKIM_KEY_PATH='/tmp/dkim.pem')
    @patch('charitrace.utils.send_dkim_receipt')
    def test_receipt_email_dkim(self, mock_dkim):
        """With DKIM settings the receipt is DKIM-signed instead of using the mail backend."""
        from .utils import send_donation_receipt
        donation = self.make_donation()
        self.assertTrue(send_donation_receipt(donation))
        mock_dkim.assert_called_once_with(donation)
        self.assertEqual(len(mail.outbox), 0)

    @override_settings(DEFAULT_FROM_EMAIL='receipts@charitrace.org', DKIM_DOMAIN='charitrace.org')
    def test_build_receipt_email_headers(self):
        """Receipt emails carry every header that gets signed."""
        from .utils import RECEIPT_SIGNED_HEADERS, build_receipt_email
        donation = self.make_donation()
        msg = build_receipt_email(donation)
        for header in RECEIPT_SIGNED_HEADERS:
            self.assertTrue(msg[header.decode()])
        self.assertEqual(msg['To'], 'donor@example.com')
        self.assertEqual(msg['Subject'], 'Your donation to Clean Water')
        self.assertTrue(msg['Message-ID'].endswith('@charitrace.org>'))
        self.assertIn(donation.transaction_id, msg.get_payload(decode=True).decode())

    @patch('charitrace.utils.dkim.sign', return_value=b'DKIM-Signature: v=1; a=rsa-sha256; d=charitrace.org; s=mail')
    def test_dkim_sign_message(self, mock_sign):
        """The signature is added as a single DKIM-Signature header."""
        from .utils import RECEIPT_SIGNED_HEADERS, build_receipt_email, dkim_sign_message
        msg = build_receipt_email(self.make_donation())
        with patch('builtins.open', mock_open(read_data=b'private-key')):
            dkim_sign_message(msg, 'mail', 'charitrace.org', '/tmp/dkim.pem')
        kwargs = mock_sign.call_args.kwargs
        self.assertEqual(kwargs['privkey'], b'private-key')
        self.assertEqual(kwargs['selector'], b'mail')
        self.assertEqual(kwargs['domain'], b'charitrace.org')
        self.assertEqual(kwargs['include_headers'], RECEIPT_SIGNED_HEADERS)
        self.assertEqual(msg.get_all('DKIM-Signature'), ['v=1; a=rsa-sha256; d=charitrace.org; s=mail'])

    @override_settings(
        DKIM_SELECTOR='mail', DKIM_DOMAIN='charitrace.org', DKIM_KEY_PATH='/tmp/dkim.pem',
        EMAIL_HOST='smtp.charitrace.org', EMAIL_PORT=0, EMAIL_HOST_USER='', EMAIL_HOST_PASSWORD='',
    )
    @patch('charitrace.utils.smtplib.SMTP_SSL')
    @patch('charitrace.utils.dkim_sign_message', side_effect=lambda msg, *args: msg)
    def test_send_dkim_receipt(self, mock_sign, mock_smtp):
        """Signed receipts go over SMTP_SSL on port 465 and skip login without credentials."""
        from .utils import send_dkim_receipt
        send_dkim_receipt(self.make_donation())
        mock_sign.assert_called_once()
        self.assertEqual(mock_sign.call_args.args[1:], ('mail', 'charitrace.org', '/tmp/dkim.pem'))
        mock_smtp.assert_called_once_with('smtp.charitrace.org', 465)
        smtp = mock_smtp.return_value.__enter__.return_value
        smtp.login.assert_not_called()
        smtp.send_message.assert_called_once()

    def test_receipt_skipped_without_donor(self):
        """Donations without a donor get no receipt."""
        from .utils import send_donation_receipt
        self.assertFalse(send_donation_receipt(self.make_donation(donor=None)))


class AuthViewsTests(BaseTestCase):
    def post_json(self, name, data):
        return self.client.post(reverse(name), data=json.dumps(data), content_type='application/json')

    def test_register(self):
        """Registration creates a user, logs it in and reports the donor role."""
        resp = self.post_json('register', {'name': 'Alice Smith', 'email': 'Alice@Example.com', 'password': 'Str0ng!Passw0rd'})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['data']['role'], 'donor')
        self.assertTrue(User.objects.filter(username='alice@example.com').exists())
        self.assertEqual(self.client.get(reverse('profile')).status_code, 200)

    def test_register_weak_password(self):
        """Weak passwords are rejected with the validator messages."""
        resp = self.post_json('register', {'name': 'Alice', 'email': 'alice@example.com', 'password': 'password'})
        self.assertEqual(resp.status_code, 400)
        self.assertTrue(resp.json()['details'])

    def test_register_duplicate_email(self):
        """An email can only be registered once."""
        resp = self.post_json('register', {'name': 'Dana', 'email': 'donor@example.com', 'password': 'Str0ng!Passw0rd'})
        self.assertEqual(resp.status_code, 400)

    def test_login_and_roles(self):
        """Login works by email and reports the charity role for managers."""
        self.assertEqual(self.post_json('login', {'email': 'manager@example.com', 'password': 'wrong'}).status_code, 401)
        resp = self.post_json('login', {'email': 'manager@example.com', 'password': 'pass12345'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['data']['role'], 'charity')

    def test_profile_requires_login(self):
        """Anonymous requests get a 401 JSON error instead of a redirect."""
        resp = self.client.get(reverse('profile'))
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json()['success'])


class CharityProjectViewsTests(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.install_service()

    def send_json(self, method, url, data):
        return getattr(self.client, method)(url, data=json.dumps(data), content_type='application/json')

    def test_list_and_filter_charities(self):
        """Charities can be filtered by category and searched by name."""
        Charity.objects.create(name='Books for All', email='b@example.org', registration_id='RO-2', category='EDUCATION')
        resp = self.client.get(reverse('charities'), {'category': 'education'})
        self.assertEqual([c['name'] for c in resp.json()['data']], ['Books for All'])
        resp = self.client.get(reverse('charities'), {'q': 'water'})
        self.assertEqual([c['name'] for c in resp.json()['data']], ['Clean Water'])

    def test_create_charity(self):
        """The creator of a charity becomes its manager, one charity per user."""
        self.client.login(username='donor@example.com', password='pass12345')
        data = {'name': 'Books for All', 'email': 'books@example.org', 'registration_id': 'RO-99', 'category': 'EDUCATION'}
        resp = self.send_json('post', reverse('charities'), data)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(Charity.objects.get(registration_id='RO-99').manager, self.donor)

        data.update(registration_id='RO-100', email='other@example.org')
        self.assertEqual(self.send_json('post', reverse('charities'), data).status_code, 400)

    def test_create_charity_invalid(self):
        """Invalid charity data returns field details."""
        self.client.login(username='donor@example.com', password='pass12345')
        resp = self.send_json('post', reverse('charities'), {'name': 'X', 'email': 'not-an-email', 'registration_id': 'RO-5'})
        self.assertEqual(resp.status_code, 400)
        self.assertIn('email', resp.json()['details'])

    def test_update_charity_permissions(self):
        """Only the manager (or staff) may update a charity."""
        url = reverse('charity_detail', args=[self.charity.id])
        self.client.login(username='donor@example.com', password='pass12345')
        self.assertEqual(self.send_json('put', url, {'mission': 'x'}).status_code, 403)
        self.client.login(username='manager@example.com', password='pass12345')
        resp = self.send_json('put', url, {'mission': 'Water for everyone'})
        self.assertEqual(resp.status_code, 200)
        self.charity.refresh_from_db()
        self.assertEqual(self.charity.mission, 'Water for everyone')

    def test_charity_flow(self):
        """Fund flow comes from the chain; an unreachable chain is a 502."""
        url = reverse('charity_flow', args=[self.charity.id])
        self.chain.get_charity_flow.return_value = {'total_received': '10', 'total_disbursed': '4', 'balance': '6'}
        self.assertEqual(self.client.get(url).json()['data']['balance'], '6')
        self.chain.get_charity_flow.side_effect = ChainError('down')
        self.assertEqual(self.client.get(url).status_code, 502)

    def test_charity_donation_stats(self):
        """Donation stats cover succeeded donations, projects and the monthly trend."""
        self.make_donation(project=self.project)
        self.make_donation(anonymous=True)
        self.make_donation(status=Donation.PaymentStatus.FAILED)
        data = self.client.get(reverse('charity_donation_stats', args=[self.charity.id])).json()['data']
        self.assertEqual(Decimal(str(data['total_amount'])), Decimal('50'))
        self.assertEqual(data['total_donations'], 2)
        self.assertEqual(data['unique_donors'], 2)
        self.assertEqual(data['projects'][0]['donation_count'], 1)
        self.assertEqual(len(data['trend_data']), 1)
        self.assertEqual(data['trend_data'][0]['count'], 2)

    def test_create_project(self):
        """Managers create projects for their charity; other users cannot."""
        data = {'charity_id': self.charity.id, 'title': 'School roof', 'goal': 500, 'start_date': '2025-03-01'}
        self.client.login(username='donor@example.com', password='pass12345')
        self.assertEqual(self.send_json('post', reverse('projects'), data).status_code, 403)
        self.client.login(username='manager@example.com', password='pass12345')
        resp = self.send_json('post', reverse('projects'), data)
        self.assertEqual(resp.status_code, 201)
        project = Project.objects.get(title='School roof')
        self.assertEqual(project.goal, Decimal('500'))
        self.assertEqual(project.start_date, date(2025, 3, 1))

    def test_create_project_invalid_goal(self):
        """A zero goal is rejected."""
        self.client.login(username='manager@example.com', password='pass12345')
        data = {'charity_id': self.charity.id, 'title': 'Nothing', 'goal': 0, 'start_date': '2025-03-01'}
        self.assertEqual(self.send_json('post', reverse('projects'), data).status_code, 400)

    def test_delete_project_with_donations_cancels(self):
        """Projects with donations are cancelled instead of deleted."""
        self.make_donation(project=self.project)
        self.client.login(username='manager@example.com', password='pass12345')
        resp = self.client.delete(reverse('project_detail', args=[self.project.id]))
        self.assertEqual(resp.status_code, 200)
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, Project.Status.CANCELLED)

    def test_delete_project_without_donations(self):
        """Projects without donations are deleted."""
        self.client.login(username='manager@example.com', password='pass12345')
        self.client.delete(reverse('project_detail', args=[self.project.id]))
        self.assertFalse(Project.objects.filter(pk=self.project.id).exists())

    def test_categories_and_statuses(self):
        """Category and status lists are public."""
        self.assertIn('EDUCATION', self.client.get(reverse('charity_categories')).json()['data'])
        self.assertIn('PAUSED', self.client.get(reverse('project_statuses')).json()['data'])


class DonationViewsTests(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.install_service()
        self.client.login(username='donor@example.com', password='pass12345')

    def post_json(self, name, data, **extra):
        return self.client.post(reverse(name), data=json.dumps(data), content_type='application/json', **extra)

    def succeeded_intent(self):
        return {'id': 'pi_123', 'status': 'succeeded', 'latest_charge': {'receipt_url': 'https://pay.stripe.com/receipts/r1'}}

    @patch('charitrace.views.stripe_create_payment_intent')
    def test_create_payment_intent(self, mock_create):
        """A payment intent creates a pending donation linked to it."""
        mock_create.return_value = {'id': 'pi_new', 'client_secret': 'secret_new'}
        resp = self.post_json('create_payment_intent', {
            'amount': '25.50', 'charity_id': self.charity.id, 'project_id': self.project.id, 'message': 'Good luck',
        })
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body['client_secret'], 'secret_new')
        donation = Donation.objects.get(pk=body['donation_id'])
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.PENDING)
        self.assertEqual(donation.amount, Decimal('25.50'))
        self.assertEqual(donation.payment_intent_id, 'pi_new')
        self.assertTrue(donation.transaction_id.startswith('don_'))
        self.assertEqual(mock_create.call_args[0][0], Decimal('25.50'))

    def test_create_payment_intent_validation(self):
        """Bad amounts, unknown charities and foreign projects are rejected."""
        other = Charity.objects.create(name='Other', email='o@example.org', registration_id='RO-3')
        foreign = Project.objects.create(charity=other, title='Elsewhere', goal=10, start_date=date(2025, 1, 1))
        self.assertEqual(self.post_json('create_payment_intent', {'amount': 0, 'charity_id': self.charity.id}).status_code, 400)
        self.assertEqual(self.post_json('create_payment_intent', {'amount': 5}).status_code, 400)
        self.assertEqual(self.post_json('create_payment_intent', {'amount': 5, 'charity_id': 9999}).status_code, 404)
        resp = self.post_json('create_payment_intent', {'amount': 5, 'charity_id': self.charity.id, 'project_id': foreign.id})
        self.assertEqual(resp.status_code, 404)
        self.assertFalse(Donation.objects.exists())

    @patch('charitrace.views.stripe_create_payment_intent', side_effect=stripe.StripeError('card network down'))
    def test_create_payment_intent_stripe_error(self, _):
        """Stripe failures are reported as 502 and no donation is stored."""
        resp = self.post_json('create_payment_intent', {'amount': 5, 'charity_id': self.charity.id})
        self.assertEqual(resp.status_code, 502)
        self.assertFalse(Donation.objects.exists())

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment(self, mock_retrieve, mock_receipt):
        """Confirmation marks the donation succeeded, credits the project and verifies it."""
        mock_retrieve.return_value = self.succeeded_intent()
        self.chain.record_donation.return_value = CHAIN_OK
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING, project=self.project)

        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body['verification']['verified'])
        self.assertIsNone(body['verification_error'])

        donation.refresh_from_db()
        self.project.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.SUCCEEDED)
        self.assertEqual(donation.receipt_url, 'https://pay.stripe.com/receipts/r1')
        self.assertEqual(self.project.current_amount, Decimal('25.00'))
        self.assertEqual(donation.blockchain_verification.transaction_hash, '0xabc')
        mock_receipt.assert_called_once()

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_twice(self, mock_retrieve, mock_receipt):
        """Confirming again credits the project and submits to the chain only once."""
        mock_retrieve.return_value = self.succeeded_intent()
        self.chain.record_donation.return_value = CHAIN_OK
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING, project=self.project)
        for _ in range(2):
            self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.project.refresh_from_db()
        self.assertEqual(self.project.current_amount, Decimal('25.00'))
        self.chain.record_donation.assert_called_once()
        mock_receipt.assert_called_once()

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_chain_down(self, mock_retrieve, _):
        """A chain outage leaves the payment succeeded and the verification pending."""
        mock_retrieve.return_value = self.succeeded_intent()
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)

        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()['verification']['verified'])
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.SUCCEEDED)
        self.assertEqual(donation.blockchain_verification.state, BlockchainVerification.State.PENDING_RETRY)

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_ledger_down(self, mock_retrieve, _):
        """If nothing can be recorded the error is reported, the payment still stands."""
        mock_retrieve.return_value = self.succeeded_intent()
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)
        self.install_service(FailingLedger([donation.id]))
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')

        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 200)
        self.assertIn('RPC timeout', resp.json()['verification_error'])
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.SUCCEEDED)

    @patch('charitrace.views.send_donation_receipt', side_effect=smtplib.SMTPException('mail down'))
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_receipt_failure(self, mock_retrieve, _):
        """A failing receipt email does not fail the confirmation."""
        mock_retrieve.return_value = self.succeeded_intent()
        self.chain.record_donation.return_value = CHAIN_OK
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)
        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 200)

    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_not_succeeded(self, mock_retrieve):
        """An intent that has not succeeded leaves the donation pending."""
        mock_retrieve.return_value = {'id': 'pi_123', 'status': 'requires_payment_method'}
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)
        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 400)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.PENDING)
        self.chain.record_donation.assert_not_called()

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.retrieve_payment_intent')
    def test_confirm_payment_refunded(self, mock_retrieve, mock_receipt):
        """A refunded donation cannot be confirmed and is never recorded on-chain."""
        mock_retrieve.return_value = self.succeeded_intent()
        donation = self.make_donation(status=Donation.PaymentStatus.REFUNDED)
        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Donation is refunded and cannot be confirmed')
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.REFUNDED)
        self.assertFalse(BlockchainVerification.objects.filter(donation=donation).exists())
        self.chain.record_donation.assert_not_called()
        mock_receipt.assert_not_called()

    def test_confirm_payment_other_user(self):
        """Users cannot confirm someone else's donation."""
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING, donor=self.manager)
        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_123', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 403)

    def test_confirm_payment_intent_mismatch(self):
        """The payment intent must be the one the donation was created with."""
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)
        resp = self.post_json('confirm_payment', {'payment_intent_id': 'pi_other', 'donation_id': donation.id})
        self.assertEqual(resp.status_code, 400)

    @patch('charitrace.views.send_donation_receipt')
    @patch('charitrace.views.construct_webhook_event')
    def test_webhook_succeeded_runs_verification(self, mock_event, _):
        """payment_intent.succeeded marks the donation succeeded and records it on-chain."""
        donation = self.make_donation(status=Donation.PaymentStatus.PENDING)
        mock_event.return_value = {'type': 'payment_intent.succeeded', 'data': {'object': {'id': 'pi_123', 'latest_charge': 'ch_1'}}}
        self.chain.record_donation.return_value = CHAIN_OK

        self.client.logout()
        resp = self.post_json('stripe_webhook', {}, HTTP_STRIPE_SIGNATURE='sig')
        self.assertEqual(resp.status_code, 200)
        donation.refresh_from_db()
        self.assertEqual(donation.payment_status, Donation.PaymentStatus.SUCCEEDED)
        record = donation.blockchain_verification
        self.assertTrue(record.verified)
        self.assertEqual(record.transaction_hash, '0xabc')
        self.assertEqual(self.chain.record_donation.call_args[0][0]['transaction_id'], donation.transaction_id)
        self.assertEqual(mock_event.call_args[0][1], 'sig')

    @patch('charitrace.views.construct_webhook_event')
    def test_webhook_failed_and_refunded(self, mock_event):
        """payment_failed marks FAILED, charge.refunded marks REFUNDED."""
        pending = self.make_donation(status=Donation.PaymentStatus.PENDING, payment_intent_id='pi_fail')
        paid = self.make_donation(payment_intent_id='pi_paid')

        mock_event.return_value = {'type': 'payment_intent.payment_failed', 'data': {'object': {'id': 'pi_fail'}}}
        self.post_json('stripe_webhook', {})
        mock_event.return_value = {'type': 'charge.refunded', 'data': {'object': {'id': 'ch_1', 'payment_intent': 'pi_paid'}}}
        self.post_json('stripe_webhook', {})

        pending.refresh_from_db()
        paid.refresh_from_db()
        self.assertEqual(pending.payment_status, Donation.PaymentStatus.FAILED)
        self.assertEqual(paid.payment_status, Donation.PaymentStatus.REFUNDED)

    @patch('charitrace.views.construct_webhook_event', side_effect=ValueError('Invalid payload'))
    def test_webhook_bad_signature(self, _):
        """Events that fail signature checks are rejected with 400."""
        self.assertEqual(self.post_json('stripe_webhook', {}).status_code, 400)

    def test_history_and_detail(self):
        """Donors see their own donations with verification summaries."""
        own = self.make_donation()
        self.make_record(own)
        other = self.make_donation(donor=self.manager)
        data = self.client.get(reverse('donation_history')).json()['data']
        self.assertEqual([d['id'] for d in data], [own.id])
        self.assertTrue(data[0]['verification']['verified'])
        self.assertEqual(self.client.get(reverse('donation_detail', args=[own.id])).status_code, 200)
        self.assertEqual(self.client.get(reverse('donation_detail', args=[other.id])).status_code, 403)
        self.assertEqual(self.client.get(reverse('donation_detail', args=[9999])).status_code, 404)

    def test_homepage_stats(self):
        """Homepage stats are public and include verification stats."""
        self.make_record(self.make_donation())
        self.client.logout()
        data = self.client.get(reverse('homepage_stats')).json()['data']
        self.assertEqual(data['total_donations'], 1)
        self.assertEqual(data['total_charities'], 1)
        self.assertEqual(data['active_projects'], 1)
        self.assertEqual(data['verification']['verified_count'], 1)

    def test_donor_stats(self):
        """Donors see totals, categories and monthly figures for their succeeded donations."""
        other = Charity.objects.create(
            name='Open Books', email='hi@openbooks.org', registration_id='RO-5678', category=Charity.Category.EDUCATION,
        )
        self.make_record(self.make_donation(amount=Decimal('10.00')))
        self.make_donation(amount=Decimal('20.00'), charity=other)
        self.make_donation(amount=Decimal('500.00'), status=Donation.PaymentStatus.PENDING)

        resp = self.client.get(reverse('donor_stats', args=[self.donor.id]))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()['data']
        self.assertEqual(data['total_donations'], 2)
        self.assertEqual(Decimal(data['total_amount']), Decimal('30.00'))
        self.assertEqual(Decimal(data['average_donation']), Decimal('15.00'))
        self.assertEqual(data['unique_charities'], 2)
        self.assertEqual(data['verified_on_blockchain'], 1)
        self.assertEqual(data['pending_verification'], 1)
        self.assertEqual(data['categories_supported'], sorted([Charity.Category.EDUCATION, Charity.Category.HUMANITARIAN]))
        self.assertEqual(len(data['recent_donations']), 2)
        self.assertEqual(sum(month['count'] for month in data['monthly_breakdown']), 2)
        self.assertEqual(data['source'], 'database')

        dashboard = self.client.get(reverse('donor_dashboard_stats')).json()['data']
        self.assertEqual(dashboard['total_donations'], 2)

    def test_donor_stats_without_donations(self):
        """A donor with no succeeded donations gets zeros."""
        data = self.client.get(reverse('donor_dashboard_stats')).json()['data']
        self.assertEqual(data['total_donations'], 0)
        self.assertEqual(Decimal(data['average_donation']), Decimal('0'))
        self.assertEqual(data['monthly_breakdown'], [])

    def test_donor_stats_permissions(self):
        """Only the donor and staff can read a donor's statistics."""
        url = reverse('donor_stats', args=[self.donor.id])
        self.client.logout()
        self.assertEqual(self.client.get(url).status_code, 401)

        self.client.login(username='manager@example.com', password='pass12345')
        self.assertEqual(self.client.get(url).status_code, 403)

        User.objects.create_user(username='admin@example.com', email='admin@example.com', password='pass12345', is_staff=True)
        self.client.login(username='admin@example.com', password='pass12345')
        self.assertEqual(self.client.get(url).status_code, 200)
        self.assertEqual(self.client.get(reverse('donor_stats', args=[9999])).status_code, 404)


class VerificationViewsTests(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.install_service()
        self.staff = User.objects.create_user(username='admin@example.com', email='admin@example.com', password='pass12345', is_staff=True)

    def test_verify_endpoint(self):
        """Donors can trigger verification of their own donations."""
        donation = self.make_donation()
        self.chain.record_donation.return_value = CHAIN_OK
        url = reverse('verify_donation', args=[donation.id])
        self.assertEqual(self.client.post(url).status_code, 401)

        self.client.login(username='manager@example.com', password='pass12345')
        self.assertEqual(self.client.post(url).status_code, 403)

        self.client.login(username='donor@example.com', password='pass12345')
        resp = self.client.post(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['data']['transaction_hash'], '0xabc')
        self.assertEqual(self.client.post(reverse('verify_donation', args=[9999])).status_code, 404)

    def test_verify_endpoint_unpaid_donation(self):
        """Pending and refunded donations are refused before anything reaches the chain."""
        self.client.login(username='donor@example.com', password='pass12345')
        for status in (Donation.PaymentStatus.PENDING, Donation.PaymentStatus.REFUNDED):
            donation = self.make_donation(status=status)
            resp = self.client.post(reverse('verify_donation', args=[donation.id]))
            self.assertEqual(resp.status_code, 400)
            self.assertFalse(BlockchainVerification.objects.filter(donation=donation).exists())
        self.chain.record_donation.assert_not_called()

    def test_verify_endpoint_chain_and_ledger_down(self):
        """When the fallback record cannot be written either, the endpoint answers 502."""
        donation = self.make_donation()
        self.install_service(FailingLedger([donation.id]))
        self.chain.record_donation.side_effect = ChainSubmissionError('RPC timeout')
        self.client.login(username='donor@example.com', password='pass12345')
        self.assertEqual(self.client.post(reverse('verify_donation', args=[donation.id])).status_code, 502)

    def test_verify_endpoint_ledger_down_after_mining(self):
        """A mined donation whose record cannot be stored answers 500."""
        donation = self.make_donation()
        self.install_service(FailingLedger([donation.id]))
        self.chain.record_donation.return_value = CHAIN_OK
        self.client.login(username='donor@example.com', password='pass12345')
        self.assertEqual(self.client.post(reverse('verify_donation', args=[donation.id])).status_code, 500)

    def test_verification_status_endpoint(self):
        """The status endpoint reports NOT_VERIFIED before any attempt."""
        donation = self.make_donation()
        self.client.login(username='donor@example.com', password='pass12345')
        resp = self.client.get(reverse('donation_verification', args=[donation.id]))
        self.assertEqual(resp.json()['data']['status'], 'NOT_VERIFIED')

    def test_admin_endpoints_require_staff(self):
        """Verification administration is staff only."""
        self.client.login(username='donor@example.com', password='pass12345')
        for name in ('verification_stats', 'unverified_donations'):
            self.assertEqual(self.client.get(reverse(name)).status_code, 403)
        self.assertEqual(self.client.post(reverse('retry_verifications')).status_code, 403)

    def test_stats_unverified_and_retry(self):
        """Staff can read stats, list unverified donations and run a retry sweep."""
        self.make_record(self.make_donation(pk=1), verified=False)
        self.make_donation(pk=2)
        self.chain.record_donation.return_value = CHAIN_OK
        self.client.login(username='admin@example.com', password='pass12345')

        stats = self.client.get(reverse('verification_stats')).json()['data']
        self.assertEqual(stats['pending_count'], 1)
        unverified = self.client.get(reverse('unverified_donations')).json()['data']
        self.assertEqual({d['id'] for d in unverified}, {1, 2})

        result = self.client.post(reverse('retry_verifications')).json()['data']
        self.assertEqual(result, {'retried': 1, 'successful': 1, 'failed': 0})

    def test_batch_endpoint(self):
        """Batch verification returns per-donation results."""
        donation = self.make_donation()
        self.chain.record_donation.return_value = CHAIN_OK
        self.client.login(username='admin@example.com', password='pass12345')
        resp = self.client.post(
            reverse('batch_verify'),
            data=json.dumps({'donation_ids': [donation.id, 9999]}),
            content_type='application/json',
        )
        body = resp.json()
        self.assertEqual(body['succeeded'], 1)
        self.assertEqual(body['total'], 2)
        self.assertFalse(body['data'][1]['success'])

        bad = self.client.post(reverse('batch_verify'), data=json.dumps({'donation_ids': 'all'}), content_type='application/json')
        self.assertEqual(bad.status_code, 400)

    def test_batch_endpoint_skips_unpaid(self):
        """Unpaid donations in a batch are reported as failed and never submitted."""
        paid = self.make_donation()
        pending = self.make_donation(status=Donation.PaymentStatus.PENDING)
        self.chain.record_donation.return_value = CHAIN_OK
        self.client.login(username='admin@example.com', password='pass12345')
        resp = self.client.post(
            reverse('batch_verify'),
            data=json.dumps({'donation_ids': [pending.id, paid.id]}),
            content_type='application/json',
        )
        body = resp.json()
        self.assertEqual([r['donation_id'] for r in body['data']], [pending.id, paid.id])
        self.assertEqual(body['data'][0]['error'], 'Only succeeded donations can be recorded on the blockchain')
        self.assertTrue(body['data'][1]['success'])
        self.assertEqual(body['succeeded'], 1)
        self.assertEqual(self.chain.record_donation.call_count, 1)
        self.assertFalse(BlockchainVerification.objects.filter(donation=pending).exists())

    def test_chain_donation_endpoint(self):
        """Staff can compare the contract's copy of a donation with the database."""
        self.make_donation(pk=1)
        self.client.login(username='admin@example.com', password='pass12345')
        url = reverse('chain_donation', args=['don_1'])

        self.chain.get_donation.return_value = {'donor_id': str(self.donor.id), 'charity_id': str(self.charity.id), 'amount': '25'}
        self.assertTrue(self.client.get(url).json()['data']['match'])

        self.chain.get_donation.return_value = {'donor_id': '', 'charity_id': '', 'amount': '0'}
        self.assertEqual(self.client.get(url).status_code, 404)

        self.chain.get_donation.side_effect = ChainError('down')
        self.assertEqual(self.client.get(url).status_code, 502)


class ManagementAndAdminTests(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.install_service()

    def test_retry_command(self):
        """retry_failed_verifications runs one sweep and prints the counts."""
        self.make_record(self.make_donation(pk=1), verified=False)
        self.chain.record_donation.return_value = CHAIN_OK
        out = io.StringIO()
        call_command('retry_failed_verifications', stdout=out)
        self.assertIn('Retried 1 verifications: 1 successful, 0 failed', out.getvalue())
        self.assertTrue(BlockchainVerification.objects.get(donation_id=1).verified)

    def test_admin_retry_action(self):
        """The admin action retries verification of the selected records."""
        record = self.make_record(self.make_donation(pk=1), verified=False)
        self.chain.record_donation.return_value = CHAIN_OK
        User.objects.create_superuser('root@example.com', 'root@example.com', 'pass12345')
        self.client.login(username='root@example.com', password='pass12345')

        resp = self.client.post(
            reverse('admin:charitrace_blockchainverification_changelist'),
            {'action': 'retry_blockchain_verification', '_selected_action': [record.pk]},
        )
        self.assertEqual(resp.status_code, 302)
        record.refresh_from_db()
        self.assertTrue(record.verified)
        self.assertEqual(record.transaction_hash, '0xabc')

    def test_admin_retry_action_skips_unpaid(self):
        """The admin action leaves records of donations that are no longer paid alone."""
        record = self.make_record(self.make_donation(pk=1, status=Donation.PaymentStatus.REFUNDED), verified=False)
        User.objects.create_superuser('root@example.com', 'root@example.com', 'pass12345')
        self.client.login(username='root@example.com', password='pass12345')
        self.client.post(
            reverse('admin:charitrace_blockchainverification_changelist'),
            {'action': 'retry_blockchain_verification', '_selected_action': [record.pk]},
        )
        self.chain.record_donation.assert_not_called()
        record.refresh_from_db()
        self.assertFalse(record.verified)

    def test_admin_cannot_delete_verification_records(self):
        """Verification records cannot be deleted from the admin, singly or in bulk."""
        from django.contrib import admin
        from django.test import RequestFactory
        from .admin import BlockchainVerificationAdmin

        record = self.make_record(self.make_donation(pk=1))
        root = User.objects.create_superuser('root@example.com', 'root@example.com', 'pass12345')
        self.client.login(username='root@example.com', password='pass12345')
        resp = self.client.post(reverse('admin:charitrace_blockchainverification_delete', args=[record.pk]), {'post': 'yes'})
        self.assertEqual(resp.status_code, 403)
        self.assertTrue(BlockchainVerification.objects.filter(pk=record.pk).exists())

        request = RequestFactory().get('/admin/')
        request.user = root
        model_admin = BlockchainVerificationAdmin(BlockchainVerification, admin.site)
        self.assertNotIn('delete_selected', model_admin.get_actions(request))
        self.assertFalse(model_admin.has_delete_permission(request, record))
