"""
Charitrace Django Admin Configuration

This module configures the Django admin interface for Charitrace models.

Key features:
- Donation amounts, currencies and ids are read-only once the payment succeeded
- Verification records are read-only; they are written by the verification service only
- "Retry blockchain verification" action on donations and verification records
"""

from django.contrib import admin, messages

from .apps import get_verification_service
from .models import BlockchainVerification, Charity, Donation, Project
from .verification import VERIFICATION_FAILURES


def _retry_verification(modeladmin, request, donation_ids):
    service = get_verification_service()
    verified = pending = failed = 0
    for donation_id in donation_ids:
        try:
            record = service.verify_donation(donation_id)
        except VERIFICATION_FAILURES as e:
            failed += 1
            modeladmin.message_user(request, f"Donation {donation_id}: {e}", level=messages.ERROR)
            continue
        if record.verified:
            verified += 1
        else:
            pending += 1
    modeladmin.message_user(
        request,
        f"Verified: {verified}, still pending: {pending}, failed: {failed}",
        level=messages.SUCCESS if not (pending or failed) else messages.WARNING,
    )


class ProjectInline(admin.TabularInline):
    model = Project
    extra = 0
    fields = ('title', 'goal', 'current_amount', 'status', 'start_date', 'end_date')
    readonly_fields = ('current_amount',)


class CharityAdmin(admin.ModelAdmin):
    list_display = ('name', 'category', 'email', 'registration_id', 'manager')
    list_filter = ('category',)
    search_fields = ('name', 'email', 'registration_id')
    inlines = (ProjectInline,)


class ProjectAdmin(admin.ModelAdmin):
    list_display = ('title', 'charity', 'goal', 'current_amount', 'status')
    list_filter = ('status',)
    search_fields = ('title', 'charity__name')
    readonly_fields = ('current_amount',)


class DonationAdmin(admin.ModelAdmin):
    """
    Admin interface configuration for Donation model.

    Once a donation has succeeded its amount, currency and ids describe a
    settled payment (and possibly an on-chain record), so they become
    read-only.
    """
    list_display = ('transaction_id', 'charity', 'project', 'amount', 'currency', 'payment_status', 'created_at')
    list_filter = ('payment_status', 'currency', 'anonymous')
    search_fields = ('transaction_id', 'payment_intent_id', 'charity__name')
    readonly_fields = ('transaction_id', 'payment_intent_id', 'created_at', 'updated_at')
    actions = ('retry_blockchain_verification',)

    def get_readonly_fields(self, request, obj=None):
        if obj and obj.payment_status == Donation.PaymentStatus.SUCCEEDED:
            return self.readonly_fields + ('amount', 'currency', 'charity', 'project')
        return self.readonly_fields

    @admin.action(description="Retry blockchain verification")
    def retry_blockchain_verification(self, request, queryset):
        succeeded = queryset.filter(payment_status=Donation.PaymentStatus.SUCCEEDED)
        _retry_verification(self, request, list(succeeded.values_list('id', flat=True)))


class BlockchainVerificationAdmin(admin.ModelAdmin):
    list_display = ('donation', 'state', 'verified', 'transaction_hash', 'block_number', 'timestamp')
    list_filter = ('state', 'verified')
    search_fields = ('transaction_hash', 'donation__transaction_id')
    readonly_fields = ('donation', 'transaction_hash', 'block_number', 'timestamp', 'verified', 'state')
    actions = ('retry_blockchain_verification',)

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        # Ledger rows are permanent; a deleted row would let a donation be recorded twice
        return False

    @admin.action(description="Retry blockchain verification")
    def retry_blockchain_verification(self, request, queryset):
        pending = queryset.filter(verified=False, donation__payment_status=Donation.PaymentStatus.SUCCEEDED)
        _retry_verification(self, request, list(pending.values_list('donation_id', flat=True)))


admin.site.register(Charity, CharityAdmin)
admin.site.register(Project, ProjectAdmin)
admin.site.register(Donation, DonationAdmin)
admin.site.register(BlockchainVerification, BlockchainVerificationAdmin)
