"""
Charitrace Utilities

Helpers for the external services used by the donation flow:
- Stripe PaymentIntent creation/retrieval and webhook signature checks
- Application transaction id generation
- Donation receipt emails, DKIM-signed when a DKIM key is configured

These keep third-party calls out of the views so tests can patch them.
"""

import email.utils
import logging
import secrets
import smtplib
from decimal import Decimal
from email.mime.text import MIMEText

import dkim
import stripe
from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def generate_transaction_id():
    """Return a new application-level donation id such as don_1f2e3d4c5b6a7988."""
    return f"don_{secrets.token_hex(8)}"


def amount_to_cents(amount):
    return int((Decimal(amount) * 100).quantize(Decimal('1')))


def create_payment_intent(amount, currency, description, metadata):
    """
    Create a Stripe PaymentIntent for a donation.

    Args:
        amount: Decimal amount in major units (converted to cents here)
        currency: ISO currency code
        description: Text shown in the Stripe dashboard
        metadata: Flat dict of strings stored on the intent

    Returns:
        stripe.PaymentIntent: The created intent (id, client_secret, ...)

    Raises:
        stripe.StripeError: If Stripe rejects the request or is unreachable
    """
    return stripe.PaymentIntent.create(
        api_key=settings.STRIPE_SECRET_KEY,
        amount=amount_to_cents(amount),
        currency=currency.lower(),
        description=description,
        metadata=metadata,
    )


def retrieve_payment_intent(payment_intent_id):
    return stripe.PaymentIntent.retrieve(
        payment_intent_id,
        api_key=settings.STRIPE_SECRET_KEY,
        expand=['latest_charge'],
    )


def receipt_url_from_intent(payment_intent):
    """Return the receipt URL of the intent's latest charge, if it was expanded."""
    try:
        charge = payment_intent['latest_charge']
        # An unexpanded charge is just its id
        if not charge or isinstance(charge, str):
            return None
        return charge['receipt_url']
    except KeyError:
        return None


def construct_webhook_event(payload, signature):
    """
    Verify a Stripe webhook signature and parse the event.

    Raises:
        ValueError: If the payload is not valid JSON
        stripe.SignatureVerificationError: If the signature does not match
    """
    return stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)


RECEIPT_SIGNED_HEADERS = [b'From', b'To', b'Subject', b'Date', b'Message-ID']


def build_receipt_email(donation):
    """Plain-text receipt for a donation as a MIME message ready to sign."""
    msg = MIMEText(build_receipt_message(donation), 'plain')
    msg['From'] = settings.DEFAULT_FROM_EMAIL
    msg['To'] = donation.donor.email
    msg['Subject'] = f"Your donation to {donation.charity.name}"
    msg['Date'] = email.utils.formatdate(localtime=True)
    msg['Message-ID'] = email.utils.make_msgid(domain=settings.DKIM_DOMAIN or None)
    return msg


def dkim_sign_message(msg, selector, domain, key_path):
    """
    Add a DKIM-Signature header to msg, signed with the private key at key_path.

    Raises:
        OSError: If the key file cannot be read
        dkim.DKIMException: If the key is not a valid private key
    """
    with open(key_path, 'rb') as fh:
        private_key = fh.read()
    signature = dkim.sign(
        message=msg.as_bytes(),
        selector=selector.encode(),
        domain=domain.encode(),
        privkey=private_key,
        include_headers=RECEIPT_SIGNED_HEADERS,
    )
    # dkim.sign returns the complete header line
    name, _, value = signature.decode().partition(':')
    msg[name] = value.strip()
    return msg


def send_dkim_receipt(donation):
    """Sign a donation receipt and hand it to the SMTP server over SSL."""
    msg = dkim_sign_message(
        build_receipt_email(donation),
        settings.DKIM_SELECTOR,
        settings.DKIM_DOMAIN,
        settings.DKIM_KEY_PATH,
    )
    with smtplib.SMTP_SSL(settings.EMAIL_HOST, settings.EMAIL_PORT or 465) as smtp:
        if settings.EMAIL_HOST_USER:
            smtp.login(settings.EMAIL_HOST_USER, settings.EMAIL_HOST_PASSWORD)
        smtp.send_message(msg)


def build_receipt_message(donation):
    project = f" for the project \"{donation.project.title}\"" if donation.project_id else ''
    lines = [
        f"Hi {donation.donor.get_full_name() or donation.donor.email},",
        "",
        f"Thank you for your donation of {donation.amount} {donation.currency} to {donation.charity.name}{project}.",
        f"Transaction reference: {donation.transaction_id}",
    ]
    if donation.receipt_url:
        lines.append(f"Payment receipt: {donation.receipt_url}")
    lines += [
        "",
        "Your donation will be recorded on the blockchain so anyone can audit where the money goes.",
        "",
        "Thanks,",
        "Charitrace",
    ]
    return "\n".join(lines)


def send_donation_receipt(donation):
    """
    Email a receipt to the donor of a succeeded donation.

    Uses DKIM-signed SMTP when DKIM_SELECTOR, DKIM_DOMAIN and DKIM_KEY_PATH
    are set and Django's configured email backend otherwise. Donations
    without a donor email are skipped.

    Returns:
        bool: True if an email was handed to the mail server
    """
    if donation.donor is None or not donation.donor.email:
        return False

    if settings.DKIM_SELECTOR and settings.DKIM_DOMAIN and settings.DKIM_KEY_PATH:
        send_dkim_receipt(donation)
    else:
        send_mail(
            f"Your donation to {donation.charity.name}",
            build_receipt_message(donation),
            settings.DEFAULT_FROM_EMAIL,
            [donation.donor.email],
        )
    logger.info("Receipt for donation %s sent to donor %s", donation.id, donation.donor_id)
    return True
