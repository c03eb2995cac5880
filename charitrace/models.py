"""
Charitrace Models

This module contains the core data models for the Charitrace application:
- Charity: An organisation receiving donations, run by one manager account
- Project: A fundraising goal belonging to a charity
- Donation: A payment (attempted or completed) from a donor to a charity
- BlockchainVerification: The on-chain outcome recorded for one donation

The BlockchainVerification table is the verification ledger. It holds at
most one row per donation and is written exclusively by the verification
service in charitrace.verification.
"""

from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from .validators import validate_currency_code, validate_founded_year

PENDING_HASH_PREFIX = 'pending_'
FAILED_HASH_PREFIX = 'failed_'
PLACEHOLDER_HASH_PREFIXES = (PENDING_HASH_PREFIX, FAILED_HASH_PREFIX)


def is_placeholder_hash(transaction_hash):
    """Return True if the hash was synthesised locally rather than mined."""
    return bool(transaction_hash) and transaction_hash.startswith(PLACEHOLDER_HASH_PREFIXES)


class Charity(models.Model):
    """
    Represents a registered charity that can receive donations.

    Each charity is run by a single manager account; one user can manage at
    most one charity. Email and registration id are unique across the
    platform.
    """

    class Category(models.TextChoices):
        EDUCATION = 'EDUCATION', 'Education'
        HEALTHCARE = 'HEALTHCARE', 'Healthcare'
        ENVIRONMENT = 'ENVIRONMENT', 'Environment'
        HUMANITARIAN = 'HUMANITARIAN', 'Humanitarian'
        ANIMAL_WELFARE = 'ANIMAL_WELFARE', 'Animal welfare'
        ARTS_CULTURE = 'ARTS_CULTURE', 'Arts and culture'
        DISASTER_RELIEF = 'DISASTER_RELIEF', 'Disaster relief'
        HUMAN_RIGHTS = 'HUMAN_RIGHTS', 'Human rights'
        COMMUNITY_DEVELOPMENT = 'COMMUNITY_DEVELOPMENT', 'Community development'
        RELIGIOUS = 'RELIGIOUS', 'Religious'
        OTHER = 'OTHER', 'Other'

    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    mission = models.TextField(blank=True)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=32, blank=True)
    registration_id = models.CharField(max_length=64, unique=True)
    category = models.CharField(max_length=32, choices=Category.choices, default=Category.OTHER)
    address = models.CharField(max_length=255, blank=True)
    founded_year = models.PositiveIntegerField(blank=True, null=True, validators=[validate_founded_year])
    manager = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='managed_charity',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name_plural = 'charities'

    def __str__(self):
        return self.name

    def as_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'mission': self.mission,
            'email': self.email,
            'phone': self.phone,
            'registration_id': self.registration_id,
            'category': self.category,
            'address': self.address,
            'founded_year': self.founded_year,
            'manager_id': self.manager_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class Project(models.Model):
    """
    A fundraising project run by a charity.

    current_amount is increased by the payment-confirmation flow each time a
    donation to the project succeeds.
    """

    class Status(models.TextChoices):
        ACTIVE = 'ACTIVE', 'Active'
        COMPLETED = 'COMPLETED', 'Completed'
        CANCELLED = 'CANCELLED', 'Cancelled'
        PAUSED = 'PAUSED', 'Paused'

    charity = models.ForeignKey(Charity, on_delete=models.CASCADE, related_name='projects')
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    goal = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    current_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    start_date = models.DateField()
    end_date = models.DateField(blank=True, null=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.title} ({self.charity})"

    def percent_funded(self):
        """Return the funded share of the goal as a whole percentage."""
        if not self.goal or self.goal <= 0:
            return 0
        return int(round(self.current_amount / self.goal * 100))

    def as_dict(self):
        return {
            'id': self.id,
            'charity_id': self.charity_id,
            'title': self.title,
            'description': self.description,
            'goal': self.goal,
            'current_amount': self.current_amount,
            'percent_funded': self.percent_funded(),
            'start_date': self.start_date,
            'end_date': self.end_date,
            'status': self.status,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class Donation(models.Model):
    """
    A donation from a donor to a charity, optionally earmarked for a project.

    Tracks the Stripe payment lifecycle. A donation is created as PENDING
    when its PaymentIntent is made and moves to SUCCEEDED once the payment
    is confirmed; amount and currency do not change after that.

    Attributes:
        amount: Donated amount in major currency units
        currency: ISO 4217 currency code
        transaction_id: Application-level id (don_<hex>), also the on-chain key
        payment_intent_id: Stripe PaymentIntent id
        payment_status: PENDING / SUCCEEDED / FAILED / REFUNDED
        anonymous: Hide the donor on public listings and on-chain
        receipt_url: Stripe receipt link once the charge succeeded
    """

    class PaymentStatus(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        SUCCEEDED = 'SUCCEEDED', 'Succeeded'
        FAILED = 'FAILED', 'Failed'
        REFUNDED = 'REFUNDED', 'Refunded'

    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    currency = models.CharField(max_length=3, default='USD', validators=[validate_currency_code])
    transaction_id = models.CharField(max_length=64, unique=True)
    payment_intent_id = models.CharField(max_length=255, blank=True, db_index=True)
    payment_status = models.CharField(
        max_length=16,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
    )
    message = models.TextField(blank=True, null=True)
    anonymous = models.BooleanField(default=False)
    receipt_url = models.URLField(max_length=500, blank=True, null=True)
    donor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='donations',
    )
    charity = models.ForeignKey(Charity, on_delete=models.PROTECT, related_name='donations')
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, blank=True, null=True, related_name='donations')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Donation {self.transaction_id} - {self.amount} {self.currency} - {self.payment_status}"

    def donor_display_name(self):
        if self.anonymous or self.donor is None:
            return 'Anonymous'
        return self.donor.get_full_name() or self.donor.email

    def chain_payload(self):
        """Public fields mirrored onto the smart contract."""
        return {
            'transaction_id': self.transaction_id,
            'donor_id': self.donor_id,
            'charity_id': self.charity_id,
            'project_id': self.project_id,
            'amount': self.amount,
            'currency': self.currency,
            'anonymous': self.anonymous,
        }

    def as_dict(self):
        verification = getattr(self, 'blockchain_verification', None)
        return {
            'id': self.id,
            'amount': self.amount,
            'currency': self.currency,
            'transaction_id': self.transaction_id,
            'payment_status': self.payment_status,
            'message': self.message,
            'anonymous': self.anonymous,
            'receipt_url': self.receipt_url,
            'donor': self.donor_display_name(),
            'charity': {'id': self.charity_id, 'name': self.charity.name},
            'project': {'id': self.project_id, 'title': self.project.title} if self.project_id else None,
            'verification': verification.as_dict() if verification else None,
            'created_at': self.created_at,
        }


class BlockchainVerification(models.Model):
    """
    The verification ledger entry for a single donation.

    A donation has zero or one entry (enforced by the one-to-one link). The
    entry is either VERIFIED, carrying the mined transaction hash and block
    number, or PENDING_RETRY, carrying a placeholder hash prefixed with
    'failed_' (or 'pending_') and block number 0. Entries are updated in
    place on retry and never deleted by the verification service.
    """

    class State(models.TextChoices):
        VERIFIED = 'verified', 'Verified'
        PENDING_RETRY = 'pending_retry', 'Pending retry'

    donation = models.OneToOneField(Donation, on_delete=models.CASCADE, related_name='blockchain_verification')
    transaction_hash = models.CharField(max_length=100)
    block_number = models.PositiveBigIntegerField(default=0)
    timestamp = models.DateTimeField()
    verified = models.BooleanField(default=False, db_index=True)
    state = models.CharField(max_length=16, choices=State.choices, default=State.PENDING_RETRY, db_index=True)

    class Meta:
        ordering = ['-timestamp']

    def __str__(self):
        return f"Verification for donation {self.donation_id} ({self.state})"

    @property
    def is_placeholder(self):
        return is_placeholder_hash(self.transaction_hash)

    def as_dict(self):
        return {
            'id': self.id,
            'donation_id': self.donation_id,
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number,
            'timestamp': self.timestamp,
            'verified': self.verified,
            'state': self.state,
        }
