"""
Charitrace Blockchain Verification

Reconciles the payment state of a donation with a durable on-chain record.

VerificationService.verify_donation() submits a succeeded donation to the
chain client and writes the outcome to the verification ledger, one row per
donation:

    UNSEEN   --chain ok-------------------> VERIFIED
    UNSEEN   --chain fails, ledger ok-----> PENDING_RETRY
    PENDING  --retry, chain ok------------> VERIFIED
    PENDING  --retry, chain fails---------> PENDING_RETRY (re-stamped)
    VERIFIED --any call-------------------> VERIFIED (no-op)

No lock is taken. Two first-time attempts racing on the same donation are
resolved by the unique donation constraint: the losing insert re-reads the
winner's row. Ledger updates only apply to rows that are still unverified,
so a VERIFIED row is never overwritten.
"""

import logging
import secrets

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .blockchain import ChainError, ChainSubmissionError
from .models import FAILED_HASH_PREFIX, BlockchainVerification, Donation

logger = logging.getLogger(__name__)


class VerificationError(Exception):
    """Base class for errors surfaced by the verification service."""


class DonationNotFound(VerificationError):
    def __init__(self, donation_id):
        super().__init__(f"Donation with ID {donation_id} not found")
        self.donation_id = donation_id


class LedgerError(VerificationError):
    """The verification ledger could not be read or written."""


class LedgerReadError(LedgerError):
    """Donations or verification records could not be loaded."""


class LedgerWriteError(LedgerError):
    """The verification record could not be persisted."""


class LedgerConflict(LedgerWriteError):
    """Another writer already created the verification record for this donation."""


# Chain errors come from the chain client module, outside this hierarchy.
VERIFICATION_FAILURES = (VerificationError, ChainError)


def placeholder_hash(prefix=FAILED_HASH_PREFIX):
    """Return a synthetic, obviously non-chain transaction hash."""
    return f"{prefix}{secrets.token_hex(16)}"


class VerificationLedger:
    """
    Database access for donations and their verification records.

    Every database read and write of the verification service goes through
    here so the unique-per-donation rule and the "never overwrite a verified
    row" rule live in one place. Database errors are raised as
    LedgerReadError or LedgerWriteError; unique-constraint violations as
    LedgerConflict.
    """

    def get_donation(self, donation_id):
        try:
            return Donation.objects.select_related('charity').get(pk=donation_id)
        except Donation.DoesNotExist:
            raise DonationNotFound(donation_id)
        except DatabaseError as e:
            raise LedgerReadError(f"Failed to load donation {donation_id}: {e}") from e

    def get_donation_by_transaction_id(self, transaction_id):
        try:
            return (
                Donation.objects.select_related('charity', 'donor', 'blockchain_verification')
                .filter(transaction_id=transaction_id)
                .first()
            )
        except DatabaseError as e:
            raise LedgerReadError(f"Failed to load donation {transaction_id}: {e}") from e

    def get_record(self, donation_id):
        try:
            return BlockchainVerification.objects.filter(donation_id=donation_id).first()
        except DatabaseError as e:
            raise LedgerReadError(f"Failed to load verification record for donation {donation_id}: {e}") from e

    def create_record(self, donation, **fields):
        try:
            with transaction.atomic():
                return BlockchainVerification.objects.create(donation=donation, timestamp=timezone.now(), **fields)
        except IntegrityError as e:
            raise LedgerConflict(f"Verification record for donation {donation.id} already exists") from e
        except DatabaseError as e:
            raise LedgerWriteError(f"Failed to create verification record for donation {donation.id}: {e}") from e

    def update_unverified_record(self, record, **fields):
        """
        Update a record in place unless it has been verified meanwhile.

        Returns:
            BlockchainVerification: The current row, whether or not it was
            changed by this call
        """
        try:
            BlockchainVerification.objects.filter(pk=record.pk, verified=False).update(
                timestamp=timezone.now(), **fields
            )
            return BlockchainVerification.objects.get(pk=record.pk)
        except DatabaseError as e:
            raise LedgerWriteError(f"Failed to update verification record {record.pk}: {e}") from e

    def retryable_records(self):
        return BlockchainVerification.objects.filter(
            verified=False,
            state=BlockchainVerification.State.PENDING_RETRY,
        ).order_by('timestamp')

    def unverified_donations(self):
        return (
            Donation.objects.filter(payment_status=Donation.PaymentStatus.SUCCEEDED)
            .exclude(blockchain_verification__verified=True)
            .select_related('charity', 'donor', 'blockchain_verification')
            .order_by('-created_at')
        )

    def counts(self):
        return {
            'total_donations': Donation.objects.filter(payment_status=Donation.PaymentStatus.SUCCEEDED).count(),
            'verified_count': BlockchainVerification.objects.filter(verified=True).count(),
            'pending_count': BlockchainVerification.objects.filter(verified=False).count(),
        }


class VerificationService:
    """
    Orchestrates blockchain verification of donations.

    Args:
        chain_client: Object exposing record_donation() and get_donation()
            (normally a charitrace.blockchain.ChainClient)
        ledger: VerificationLedger used for every database read and write
    """

    def __init__(self, chain_client, ledger):
        self.chain_client = chain_client
        self.ledger = ledger

    def verify_donation(self, donation_id):
        """
        Record a donation on-chain and store the outcome.

        Calling this on an already verified donation returns the stored record
        untouched. When the chain call fails the donation is still recorded,
        as PENDING_RETRY with a 'failed_' placeholder hash, and that record is
        returned instead of raising.

        Args:
            donation_id: Primary key of the donation

        Returns:
            BlockchainVerification: The donation's single verification record

        Raises:
            DonationNotFound: If the donation does not exist
            LedgerReadError: If the donation or its record cannot be loaded
            ChainSubmissionError: If the chain call failed and the fallback
                record could not be written either
            LedgerWriteError: If the chain call succeeded but the result could
                not be stored
        """
        donation = self.ledger.get_donation(donation_id)
        record = self.ledger.get_record(donation.id)

        if record is not None and record.verified:
            logger.info("Donation %s is already verified on blockchain", donation.id)
            return record

        logger.info("Recording donation %s (%s %s) on blockchain", donation.id, donation.amount, donation.currency)
        try:
            result = self.chain_client.record_donation(donation.chain_payload())
        except ChainSubmissionError as e:
            logger.warning("Blockchain verification failed for donation %s: %s", donation.id, e)
            return self._store_failure(donation, record, e)
        except Exception as e:
            # Anything else the client raises is recorded as a failed submission
            logger.exception("Unexpected chain client failure for donation %s", donation.id)
            error = ChainSubmissionError(f"Unexpected chain client failure: {e!r}")
            error.__cause__ = e
            return self._store_failure(donation, record, error)

        return self._store_success(donation, record, result)

    def _store_success(self, donation, record, result):
        fields = {
            'transaction_hash': result['transaction_hash'],
            'block_number': int(result['block_number']),
            'verified': True,
            'state': BlockchainVerification.State.VERIFIED,
        }
        try:
            if record is None:
                try:
                    record = self.ledger.create_record(donation, **fields)
                except LedgerConflict:
                    record = self.ledger.get_record(donation.id)
                    logger.info("Donation %s was recorded by a concurrent verification", donation.id)
                    if record.verified:
                        return record
                    record = self.ledger.update_unverified_record(record, **fields)
            else:
                record = self.ledger.update_unverified_record(record, **fields)
        except LedgerError:
            logger.error(
                "Donation %s was mined in %s but the verification record could not be stored",
                donation.id, result['transaction_hash'],
            )
            raise

        logger.info(
            "Donation %s verified: tx %s, block %s", donation.id, record.transaction_hash, record.block_number
        )
        return record

    def _store_failure(self, donation, record, chain_error):
        fields = {
            'transaction_hash': placeholder_hash(FAILED_HASH_PREFIX),
            'block_number': 0,
            'verified': False,
            'state': BlockchainVerification.State.PENDING_RETRY,
        }
        try:
            if record is None:
                try:
                    record = self.ledger.create_record(donation, **fields)
                except LedgerConflict:
                    record = self.ledger.get_record(donation.id)
            else:
                record = self.ledger.update_unverified_record(record, **fields)
        except LedgerError as e:
            logger.error("Failed to store pending verification record for donation %s: %s", donation.id, e)
            raise chain_error

        logger.info("Donation %s marked for blockchain verification retry", donation.id)
        return record

    def batch_verify_donations(self, donation_ids):
        """
        Verify several donations one after another.

        A failing donation never stops the batch, whatever it raises.

        Returns:
            list: One dict per id with donation_id, success and either
            verification (the record as a dict) or error (a message)
        """
        results = []
        for donation_id in donation_ids:
            try:
                record = self.verify_donation(donation_id)
            except VERIFICATION_FAILURES as e:
                logger.error("Batch verification failed for donation %s: %s", donation_id, e)
                results.append({'donation_id': donation_id, 'success': False, 'error': str(e)})
            except Exception as e:
                logger.exception("Unexpected error verifying donation %s in batch", donation_id)
                results.append({'donation_id': donation_id, 'success': False, 'error': f"Unexpected error: {e}"})
            else:
                results.append({'donation_id': donation_id, 'success': True, 'verification': record.as_dict()})

        succeeded = sum(1 for r in results if r['success'])
        logger.info("Batch verification completed. Success: %s/%s", succeeded, len(results))
        return results

    def retry_failed_verifications(self):
        """
        Re-run verification for every record waiting for a retry.

        A retry counts as successful only when the record ends up verified.

        Returns:
            dict: retried, successful and failed counts
        """
        donation_ids = list(self.ledger.retryable_records().values_list('donation_id', flat=True))
        if not donation_ids:
            logger.info("No failed verifications to retry")
            return {'retried': 0, 'successful': 0, 'failed': 0}

        logger.info("Retrying %s failed verifications", len(donation_ids))
        successful = failed = 0
        for donation_id in donation_ids:
            try:
                record = self.verify_donation(donation_id)
            except VERIFICATION_FAILURES as e:
                logger.error("Retry failed for donation %s: %s", donation_id, e)
                failed += 1
                continue
            except Exception:
                logger.exception("Unexpected error retrying donation %s", donation_id)
                failed += 1
                continue
            if record.verified:
                successful += 1
            else:
                failed += 1

        logger.info("Retry completed. Successful: %s, Failed: %s", successful, failed)
        return {'retried': len(donation_ids), 'successful': successful, 'failed': failed}

    def get_verification_status(self, donation_id):
        donation = self.ledger.get_donation(donation_id)
        record = self.ledger.get_record(donation.id)

        if record is None:
            return {
                'verified': False,
                'status': 'NOT_VERIFIED',
                'message': 'Donation has not been verified on blockchain yet',
            }

        return {
            'verified': record.verified,
            'status': 'VERIFIED' if record.verified else 'PENDING',
            'transaction_hash': record.transaction_hash,
            'block_number': record.block_number,
            'timestamp': record.timestamp,
            'message': (
                'Donation is verified on blockchain' if record.verified
                else 'Blockchain verification is pending'
            ),
        }

    def get_verification_stats(self):
        counts = self.ledger.counts()
        total = counts['total_donations']
        verified = counts['verified_count']
        pending = counts['pending_count']
        rate = (verified / total) * 100 if total > 0 else 0
        return {
            'total_donations': total,
            'verified_count': verified,
            'pending_count': pending,
            'unverified_count': max(total - verified - pending, 0),
            'verification_rate': round(rate, 2),
        }

    def get_unverified_donations(self):
        unverified = []
        for donation in self.ledger.unverified_donations():
            has_record = getattr(donation, 'blockchain_verification', None) is not None
            unverified.append({
                'id': donation.id,
                'amount': donation.amount,
                'currency': donation.currency,
                'transaction_id': donation.transaction_id,
                'created_at': donation.created_at,
                'charity': {'id': donation.charity_id, 'name': donation.charity.name},
                'donor': {'name': 'Anonymous'} if donation.anonymous or donation.donor is None
                else {'id': donation.donor_id, 'name': donation.donor_display_name()},
                'verification_status': 'PENDING' if has_record else 'NOT_STARTED',
            })
        return unverified

    def reconcile_with_chain(self, transaction_id):
        """
        Compare the contract's copy of a donation with the database row.

        Returns:
            dict or None: found/blockchain/database/match, or None when the
            contract has no donation under this transaction id

        Raises:
            ChainError: If the contract cannot be read
            LedgerReadError: If the database row cannot be loaded
        """
        on_chain = self.chain_client.get_donation(transaction_id)
        if not on_chain.get('donor_id') and not on_chain.get('charity_id'):
            return None

        donation = self.ledger.get_donation_by_transaction_id(transaction_id)
        database = None
        match = False
        if donation is not None:
            record = getattr(donation, 'blockchain_verification', None)
            database = {
                'id': donation.id,
                'amount': donation.amount,
                'payment_status': donation.payment_status,
                'charity': donation.charity.name,
                'donor': donation.donor_display_name(),
                'verified': bool(record and record.verified),
            }
            match = (
                abs(float(on_chain['amount']) - float(donation.amount)) < 0.01
                and on_chain['charity_id'] == str(donation.charity_id)
            )
        return {'found': True, 'blockchain': on_chain, 'database': database, 'match': match}
