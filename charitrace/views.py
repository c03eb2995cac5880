"""
Charitrace Views

This module contains the JSON API of the Charitrace application, handling:
- Accounts (register, login, logout, profile)
- Charities and projects
- Donations: Stripe payment intents, confirmation and webhooks
- Blockchain verification of donations (trigger, status, stats, retries)
- Platform and donor statistics

Every endpoint answers JSON. Errors use {'success': False, 'error': ...}
with a 4xx status for client problems (validation, authentication,
permissions, missing objects) and a 5xx status for payment provider,
blockchain or ledger failures.

Verification is delegated to the process-wide VerificationService built in
CharitraceConfig.ready(); a verification failure never changes the payment
status of a donation.
"""

import json
import logging
import smtplib
from decimal import Decimal
from functools import wraps

import stripe
from django.contrib.auth import authenticate, login, logout
from django.contrib.auth.models import User
from django.contrib.auth.password_validation import validate_password
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import transaction
from django.db.models import Count, F, Q, Sum
from django.db.models.functions import TruncMonth
from django.http import JsonResponse
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .apps import get_verification_service
from .blockchain import ChainError, ChainSubmissionError
from .models import BlockchainVerification, Charity, Donation, Project
from .utils import (
    construct_webhook_event,
    create_payment_intent as stripe_create_payment_intent,
    generate_transaction_id,
    receipt_url_from_intent,
    retrieve_payment_intent,
    send_donation_receipt,
)
from .validators import parse_donation_amount, validate_currency_code
from .verification import VERIFICATION_FAILURES, DonationNotFound, LedgerError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
UNPAID_ERROR = "Only succeeded donations can be recorded on the blockchain"


# ---------------- Helpers ----------------
def _error(message, status, /, **extra):
    return JsonResponse({'success': False, 'error': message, **extra}, status=status)


def _ok(data, status=200, **extra):
    return JsonResponse({'success': True, 'data': data, **extra}, status=status, safe=False)


def _json_body(request):
    """Parse a JSON object from the request body, or return None."""
    try:
        data = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _parse_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _validation_details(e):
    try:
        return {k: v for k, v in e.message_dict.items()}
    except AttributeError:
        return {'__all__': e.messages}


def user_role(user):
    if user.is_staff:
        return 'admin'
    if Charity.objects.filter(manager=user).exists():
        return 'charity'
    return 'donor'


def _user_dict(user):
    return {
        'id': user.id,
        'name': user.get_full_name(),
        'email': user.email,
        'role': user_role(user),
    }


def api_login_required(view):
    """Like login_required, but answers 401 JSON instead of redirecting."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error('Authentication required', 401)
        return view(request, *args, **kwargs)
    return wrapper


def api_staff_required(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error('Authentication required', 401)
        if not request.user.is_staff:
            return _error('Access denied. Administrator role required.', 403)
        return view(request, *args, **kwargs)
    return wrapper


def _can_manage(user, charity):
    return user.is_staff or (charity.manager_id is not None and charity.manager_id == user.id)


def _can_view_donation(user, donation):
    return user.is_staff or donation.donor_id == user.id


def _monthly_trend(donations):
    """Group donations by month as [{'month': 'YYYY-MM', 'total', 'count'}]."""
    rows = (
        donations.annotate(month=TruncMonth('created_at'))
        .values('month')
        .annotate(total=Sum('amount'), count=Count('id'))
        .order_by('month')
    )
    return [{'month': row['month'].strftime('%Y-%m'), 'total': row['total'], 'count': row['count']} for row in rows]


# ---------------- Accounts ----------------
@require_http_methods(["POST"])
def register(request):
    """
    Create a donor account and log it in.

    Expects JSON with name, email and password. The email doubles as the
    username. Passwords go through AUTH_PASSWORD_VALIDATORS.
    """
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    name = (data.get('name') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not name or not email or not password:
        return _error('Name, email and password are required', 400)
    try:
        validate_email(email)
    except ValidationError:
        return _error('Invalid email address', 400)
    if User.objects.filter(Q(username=email) | Q(email=email)).exists():
        return _error('User already exists with this email', 400)

    first_name, _, last_name = name.partition(' ')
    user = User(username=email, email=email, first_name=first_name, last_name=last_name)
    try:
        validate_password(password, user=user)
    except ValidationError as e:
        return _error('Password does not meet the requirements', 400, details=e.messages)

    user.set_password(password)
    user.save()
    user.backend = 'django.contrib.auth.backends.ModelBackend'
    login(request, user)
    logger.info("Registered user %s", user.id)
    return _ok(_user_dict(user), status=201)


@require_http_methods(["POST"])
def login_view(request):
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    email = (data.get('email') or '').strip().lower()
    user = authenticate(request, username=email, password=data.get('password') or '')
    if user is None:
        return _error('Invalid email or password', 401)

    login(request, user)
    return _ok(_user_dict(user))


@require_http_methods(["POST"])
def logout_view(request):
    logout(request)
    return JsonResponse({'success': True})


@api_login_required
@require_http_methods(["GET"])
def profile(request):
    return _ok(_user_dict(request.user))


# ---------------- Charities ----------------
CHARITY_FIELDS = (
    'name', 'description', 'mission', 'email', 'phone',
    'registration_id', 'category', 'address', 'founded_year',
)


@require_http_methods(["GET", "POST"])
def charities(request):
    """
    List charities or register a new one.

    GET: Optional filters ?category=EDUCATION and ?q=<text> (name/description)
    POST: Create a charity managed by the current user (one per user)
    """
    if request.method == 'GET':
        queryset = Charity.objects.all()
        category = request.GET.get('category')
        if category:
            queryset = queryset.filter(category=category.upper())
        search = (request.GET.get('q') or '').strip()
        if search:
            queryset = queryset.filter(Q(name__icontains=search) | Q(description__icontains=search))
        return _ok([charity.as_dict() for charity in queryset])

    if not request.user.is_authenticated:
        return _error('Authentication required', 401)
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)
    if Charity.objects.filter(manager=request.user).exists():
        return _error('This user already manages a charity. One user can only manage one charity.', 400)

    charity = Charity(manager=request.user, **{f: data[f] for f in CHARITY_FIELDS if f in data})
    try:
        charity.full_clean()
    except ValidationError as e:
        return _error('Invalid charity data', 400, details=_validation_details(e))
    charity.save()
    logger.info("Charity %s created by user %s", charity.id, request.user.id)
    return _ok(charity.as_dict(), status=201)


@require_http_methods(["GET"])
def charity_categories(request):
    return _ok([value for value, _label in Charity.Category.choices])


@require_http_methods(["GET", "PUT", "PATCH"])
def charity_detail(request, charity_id):
    charity = Charity.objects.filter(pk=charity_id).first()
    if charity is None:
        return _error('Charity not found', 404)

    if request.method == 'GET':
        data = charity.as_dict()
        data['projects'] = [project.as_dict() for project in charity.projects.all()]
        return _ok(data)

    if not request.user.is_authenticated:
        return _error('Authentication required', 401)
    if not _can_manage(request.user, charity):
        return _error('Not authorized to update this charity', 403)
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    for field in CHARITY_FIELDS:
        if field in data:
            setattr(charity, field, data[field])
    try:
        charity.full_clean()
    except ValidationError as e:
        return _error('Invalid charity data', 400, details=_validation_details(e))
    charity.save()
    return _ok(charity.as_dict())


@require_http_methods(["GET"])
def charity_flow(request, charity_id):
    """Return the charity's fund flow as recorded on the smart contract."""
    if not Charity.objects.filter(pk=charity_id).exists():
        return _error('Charity not found', 404)
    try:
        flow = get_verification_service().chain_client.get_charity_flow(charity_id)
    except ChainError as e:
        logger.error("Charity flow unavailable for charity %s: %s", charity_id, e)
        return _error('Blockchain is currently unavailable', 502)
    return _ok(flow)


@require_http_methods(["GET"])
def charity_donation_stats(request, charity_id):
    """
    Donation statistics for a charity dashboard.

    Covers succeeded donations only: total amount and count, unique donors
    (named donors plus anonymous donations), per-project funding and a
    monthly trend.
    """
    charity = Charity.objects.filter(pk=charity_id).first()
    if charity is None:
        return _error('Charity not found', 404)

    succeeded = Donation.objects.filter(charity=charity, payment_status=Donation.PaymentStatus.SUCCEEDED)
    totals = succeeded.aggregate(total=Sum('amount'), count=Count('id'))
    named_donors = succeeded.filter(anonymous=False).exclude(donor=None).values('donor').distinct().count()
    anonymous_donations = succeeded.filter(anonymous=True).count()

    projects = charity.projects.annotate(
        donation_count=Count('donations', filter=Q(donations__payment_status=Donation.PaymentStatus.SUCCEEDED))
    )

    return _ok({
        'total_amount': totals['total'] or 0,
        'total_donations': totals['count'],
        'unique_donors': named_donors + anonymous_donations,
        'projects': [
            {
                'id': project.id,
                'title': project.title,
                'goal': project.goal,
                'current_amount': project.current_amount,
                'status': project.status,
                'donation_count': project.donation_count,
                'percent_funded': project.percent_funded(),
            }
            for project in projects
        ],
        'trend_data': _monthly_trend(succeeded),
    })


# ---------------- Projects ----------------
def _apply_project_fields(project, data):
    for field in ('title', 'description', 'goal', 'status'):
        if field in data:
            setattr(project, field, data[field])
    for field in ('start_date', 'end_date'):
        if field in data:
            value = data[field]
            setattr(project, field, parse_date(value) if isinstance(value, str) and value else value or None)


@require_http_methods(["GET", "POST"])
def projects(request):
    if request.method == 'GET':
        queryset = Project.objects.select_related('charity')
        charity_id = _parse_int(request.GET.get('charity'))
        if charity_id is not None:
            queryset = queryset.filter(charity_id=charity_id)
        status = request.GET.get('status')
        if status:
            queryset = queryset.filter(status=status.upper())
        return _ok([project.as_dict() for project in queryset])

    if not request.user.is_authenticated:
        return _error('Authentication required', 401)
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    charity = Charity.objects.filter(pk=_parse_int(data.get('charity_id'))).first()
    if charity is None:
        return _error('Charity not found', 404)
    if not _can_manage(request.user, charity):
        return _error('Unauthorized to create projects for this charity', 403)

    project = Project(charity=charity)
    _apply_project_fields(project, data)
    try:
        project.full_clean()
    except ValidationError as e:
        return _error('Invalid project data', 400, details=_validation_details(e))
    project.save()
    return _ok(project.as_dict(), status=201)


@require_http_methods(["GET"])
def project_statuses(request):
    return _ok([value for value, _label in Project.Status.choices])


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
def project_detail(request, project_id):
    """
    Read, update or delete a project.

    A project that already received donations is cancelled instead of being
    deleted, so donation history keeps its project link.
    """
    project = Project.objects.select_related('charity').filter(pk=project_id).first()
    if project is None:
        return _error('Project not found', 404)

    if request.method == 'GET':
        return _ok(project.as_dict())

    if not request.user.is_authenticated:
        return _error('Authentication required', 401)
    if not _can_manage(request.user, project.charity):
        return _error('Unauthorized to modify this project', 403)

    if request.method == 'DELETE':
        if project.donations.exists():
            project.status = Project.Status.CANCELLED
            project.save(update_fields=['status', 'updated_at'])
            return _ok(project.as_dict(), message='Project has donations and was cancelled instead of deleted')
        project.delete()
        return JsonResponse({'success': True, 'message': 'Project deleted'})

    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)
    _apply_project_fields(project, data)
    try:
        project.full_clean()
    except ValidationError as e:
        return _error('Invalid project data', 400, details=_validation_details(e))
    project.save()
    return _ok(project.as_dict())


# ---------------- Donations ----------------
@api_login_required
@require_http_methods(["POST"])
def create_payment_intent(request):
    """
    Start a donation: create a Stripe PaymentIntent and a PENDING donation.

    Expects JSON with amount, charity_id and optionally project_id (must
    belong to the charity), message, anonymous and currency (default USD).

    Returns:
        JsonResponse: client_secret for Stripe.js and the new donation_id
    """
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    try:
        amount = parse_donation_amount(data.get('amount'))
    except ValidationError:
        return _error('Valid amount is required', 400)

    currency = (data.get('currency') or 'USD').upper()
    try:
        validate_currency_code(currency)
    except ValidationError:
        return _error('Invalid currency code', 400)

    charity_id = _parse_int(data.get('charity_id'))
    if charity_id is None:
        return _error('Charity ID is required', 400)
    charity = Charity.objects.filter(pk=charity_id).first()
    if charity is None:
        return _error('Charity not found', 404)

    project = None
    if data.get('project_id') not in (None, ''):
        project = Project.objects.filter(pk=_parse_int(data.get('project_id')), charity=charity).first()
        if project is None:
            return _error('Project not found or does not belong to the specified charity', 404)

    anonymous = bool(data.get('anonymous', False))
    description = f"Donation to {charity.name}" + (f" for project #{project.id}" if project else '')
    try:
        intent = stripe_create_payment_intent(
            amount,
            currency,
            description,
            metadata={
                'charity_id': str(charity.id),
                'project_id': str(project.id) if project else '',
                'user_id': str(request.user.id),
                'anonymous': 'true' if anonymous else 'false',
            },
        )
    except stripe.StripeError as e:
        logger.error("Stripe rejected payment intent for user %s: %s", request.user.id, e)
        return _error('Failed to process donation', 502)

    donation = Donation.objects.create(
        amount=amount,
        currency=currency,
        transaction_id=generate_transaction_id(),
        payment_intent_id=intent['id'],
        payment_status=Donation.PaymentStatus.PENDING,
        message=data.get('message') or None,
        anonymous=anonymous,
        donor=request.user,
        charity=charity,
        project=project,
    )
    logger.info("Donation %s created with payment intent %s", donation.id, intent['id'])
    return JsonResponse({'client_secret': intent['client_secret'], 'donation_id': donation.id})


def mark_donation_succeeded(donation_id, receipt_url=None):
    """
    Move a donation to SUCCEEDED and credit its project once.

    Returns:
        tuple: (donation, changed) where changed is False if the donation was
        already succeeded or has been refunded
    """
    with transaction.atomic():
        donation = Donation.objects.select_for_update().get(pk=donation_id)
        if donation.payment_status in (Donation.PaymentStatus.SUCCEEDED, Donation.PaymentStatus.REFUNDED):
            return donation, False

        donation.payment_status = Donation.PaymentStatus.SUCCEEDED
        if receipt_url:
            donation.receipt_url = receipt_url
        donation.save(update_fields=['payment_status', 'receipt_url', 'updated_at'])
        if donation.project_id:
            Project.objects.filter(pk=donation.project_id).update(current_amount=F('current_amount') + donation.amount)
    return donation, True


def _send_receipt_best_effort(donation):
    try:
        send_donation_receipt(donation)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Receipt email for donation %s failed: %s", donation.id, e)


def _verify_after_payment(donation):
    """Run blockchain verification; return (record dict or None, error message or None)."""
    try:
        record = get_verification_service().verify_donation(donation.id)
    except VERIFICATION_FAILURES as e:
        logger.error("Blockchain verification of donation %s failed: %s", donation.id, e)
        return None, str(e)
    return record.as_dict(), None


@api_login_required
@require_http_methods(["POST"])
def confirm_payment(request):
    """
    Confirm a donation after Stripe.js reports success.

    Checks the PaymentIntent with Stripe, marks the donation SUCCEEDED,
    credits the project, emails a receipt and records the donation on the
    blockchain. Blockchain problems are reported in the response but never
    undo the payment.
    """
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    payment_intent_id = data.get('payment_intent_id')
    donation = Donation.objects.filter(pk=_parse_int(data.get('donation_id'))).first()
    if donation is None:
        return _error('Donation not found', 404)
    if not _can_view_donation(request.user, donation):
        return _error('Not authorized to confirm this donation', 403)
    if not payment_intent_id or payment_intent_id != donation.payment_intent_id:
        return _error('Payment intent does not match this donation', 400)

    try:
        intent = retrieve_payment_intent(payment_intent_id)
    except stripe.StripeError as e:
        logger.error("Could not retrieve payment intent %s: %s", payment_intent_id, e)
        return _error('Failed to confirm donation', 502)

    if intent['status'] != 'succeeded':
        return _error('Payment has not succeeded', 400)

    donation, changed = mark_donation_succeeded(donation.id, receipt_url_from_intent(intent))
    if donation.payment_status != Donation.PaymentStatus.SUCCEEDED:
        return _error(f'Donation is {donation.payment_status.lower()} and cannot be confirmed', 400)
    if changed:
        _send_receipt_best_effort(donation)

    verification, verification_error = _verify_after_payment(donation)
    donation.refresh_from_db()
    return JsonResponse({
        'success': True,
        'donation': donation.as_dict(),
        'verification': verification,
        'verification_error': verification_error,
        'message': 'Donation successfully recorded' + (' and verified' if verification and verification['verified'] else ''),
    })


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """
    Handle Stripe webhook events (authenticated by the Stripe signature).

    payment_intent.succeeded runs the same success path as confirm_payment,
    including blockchain verification; payment_intent.payment_failed marks
    the donation FAILED and charge.refunded marks it REFUNDED.
    """
    try:
        event = construct_webhook_event(request.body, request.headers.get('Stripe-Signature', ''))
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        return _error(f'Webhook Error: {e}', 400)

    event_type = event['type']
    payload = event['data']['object']

    if event_type == 'payment_intent.succeeded':
        receipt_url = receipt_url_from_intent(payload)
        for donation_id in Donation.objects.filter(payment_intent_id=payload['id']).values_list('id', flat=True):
            donation, changed = mark_donation_succeeded(donation_id, receipt_url)
            if changed:
                _send_receipt_best_effort(donation)
                _verify_after_payment(donation)

    elif event_type == 'payment_intent.payment_failed':
        Donation.objects.filter(
            payment_intent_id=payload['id'],
            payment_status=Donation.PaymentStatus.PENDING,
        ).update(payment_status=Donation.PaymentStatus.FAILED)

    elif event_type == 'charge.refunded':
        Donation.objects.filter(payment_intent_id=payload['payment_intent']).update(
            payment_status=Donation.PaymentStatus.REFUNDED
        )

    else:
        logger.debug("Ignoring webhook event %s", event_type)

    return JsonResponse({'received': True})


@api_login_required
@require_http_methods(["GET"])
def donation_history(request):
    donations = (
        Donation.objects.filter(donor=request.user)
        .select_related('charity', 'project', 'blockchain_verification')
    )
    return _ok([donation.as_dict() for donation in donations])


@api_login_required
@require_http_methods(["GET"])
def donation_detail(request, donation_id):
    donation = Donation.objects.select_related('charity', 'project').filter(pk=donation_id).first()
    if donation is None:
        return _error('Donation not found', 404)
    if not _can_view_donation(request.user, donation):
        return _error('Not authorized to view this donation', 403)
    return _ok(donation.as_dict())


# ---------------- Blockchain Verification ----------------
@api_login_required
@require_http_methods(["POST"])
def verify_donation(request, donation_id):
    """
    Record a donation on the blockchain (or report the existing record).

    A chain failure is not an error here: the donation comes back as PENDING
    with a placeholder record so it can be retried later.
    """
    donation = Donation.objects.filter(pk=donation_id).first()
    if donation is None:
        return _error('Donation not found', 404)
    if not _can_view_donation(request.user, donation):
        return _error('Not authorized to verify this donation', 403)
    if donation.payment_status != Donation.PaymentStatus.SUCCEEDED:
        return _error(UNPAID_ERROR, 400)

    try:
        record = get_verification_service().verify_donation(donation.id)
    except DonationNotFound as e:
        return _error(str(e), 404)
    except ChainSubmissionError as e:
        return _error('Blockchain verification failed', 502, message=str(e))
    except LedgerError as e:
        return _error('Failed to store blockchain verification', 500, message=str(e))
    return _ok(record.as_dict())


@api_login_required
@require_http_methods(["GET"])
def donation_verification(request, donation_id):
    donation = Donation.objects.filter(pk=donation_id).first()
    if donation is None:
        return _error('Donation not found', 404)
    if not _can_view_donation(request.user, donation):
        return _error('Not authorized to view this donation', 403)
    try:
        status = get_verification_service().get_verification_status(donation.id)
    except DonationNotFound as e:
        return _error(str(e), 404)
    return _ok(status)


@api_staff_required
@require_http_methods(["GET"])
def verification_stats(request):
    return _ok(get_verification_service().get_verification_stats())


@api_staff_required
@require_http_methods(["GET"])
def unverified_donations(request):
    return _ok(get_verification_service().get_unverified_donations())


@api_staff_required
@require_http_methods(["POST"])
def retry_verifications(request):
    return _ok(get_verification_service().retry_failed_verifications())


@api_staff_required
@require_http_methods(["POST"])
def batch_verify(request):
    """Verify a list of donations sequentially; expects {"donation_ids": [...]}."""
    data = _json_body(request)
    if data is None:
        return _error('Invalid JSON data', 400)

    raw_ids = data.get('donation_ids')
    if not isinstance(raw_ids, list) or not raw_ids:
        return _error('donation_ids must be a non-empty list', 400)
    if len(raw_ids) > MAX_BATCH_SIZE:
        return _error(f'At most {MAX_BATCH_SIZE} donations can be verified per batch', 400)
    donation_ids = [_parse_int(value) for value in raw_ids]
    if None in donation_ids:
        return _error('donation_ids must contain integers only', 400)

    unpaid = set(
        Donation.objects.filter(pk__in=donation_ids)
        .exclude(payment_status=Donation.PaymentStatus.SUCCEEDED)
        .values_list('id', flat=True)
    )
    verified = iter(get_verification_service().batch_verify_donations([i for i in donation_ids if i not in unpaid]))
    results = [
        {'donation_id': i, 'success': False, 'error': UNPAID_ERROR} if i in unpaid else next(verified)
        for i in donation_ids
    ]
    return _ok(results, succeeded=sum(1 for r in results if r['success']), total=len(results))


@api_staff_required
@require_http_methods(["GET"])
def chain_donation(request, transaction_id):
    """Compare a donation stored on the smart contract with the database."""
    try:
        report = get_verification_service().reconcile_with_chain(transaction_id)
    except ChainError as e:
        logger.error("Reconciliation of %s failed: %s", transaction_id, e)
        return _error('Failed to verify donation from smart contract', 502)
    except LedgerError as e:
        return _error('Failed to load donation', 500, message=str(e))
    if report is None:
        return _error('Donation not found on blockchain', 404)
    return _ok(report)


# ---------------- Platform Statistics ----------------
@require_http_methods(["GET"])
def homepage_stats(request):
    succeeded = Donation.objects.filter(payment_status=Donation.PaymentStatus.SUCCEEDED)
    totals = succeeded.aggregate(total=Sum('amount'), count=Count('id'))
    return _ok({
        'total_raised': totals['total'] or 0,
        'total_donations': totals['count'],
        'total_charities': Charity.objects.count(),
        'active_projects': Project.objects.filter(status=Project.Status.ACTIVE).count(),
        'total_donors': succeeded.exclude(donor=None).values('donor').distinct().count(),
        'verified_donations': BlockchainVerification.objects.filter(verified=True).count(),
        'verification': get_verification_service().get_verification_stats(),
    })


def _donor_stats(donor):
    """Giving summary of one donor, built from succeeded donations only."""
    succeeded = (
        Donation.objects.filter(donor=donor, payment_status=Donation.PaymentStatus.SUCCEEDED)
        .select_related('charity', 'project', 'blockchain_verification')
    )
    totals = succeeded.aggregate(
        total=Sum('amount'),
        count=Count('id'),
        charities=Count('charity', distinct=True),
    )
    verified = succeeded.filter(blockchain_verification__verified=True).count()
    average = Decimal('0')
    if totals['count']:
        average = (totals['total'] / totals['count']).quantize(Decimal('0.01'))

    return {
        'total_donations': totals['count'],
        'total_amount': totals['total'] or 0,
        'unique_charities': totals['charities'],
        'average_donation': average,
        'verified_on_blockchain': verified,
        'pending_verification': totals['count'] - verified,
        'categories_supported': sorted(set(succeeded.values_list('charity__category', flat=True))),
        'recent_donations': [donation.as_dict() for donation in succeeded.order_by('-created_at')[:10]],
        'monthly_breakdown': _monthly_trend(succeeded),
        'source': 'database',
    }


@api_login_required
@require_http_methods(["GET"])
def donor_stats(request, donor_id):
    """Donor dashboard figures; a donor sees their own, staff see anyone's."""
    if donor_id != request.user.id and not request.user.is_staff:
        return _error('Not authorized to view these statistics', 403)
    donor = User.objects.filter(pk=donor_id).first()
    if donor is None:
        return _error('Donor not found', 404)
    return _ok(_donor_stats(donor))


@api_login_required
@require_http_methods(["GET"])
def donor_dashboard_stats(request):
    return _ok(_donor_stats(request.user))
