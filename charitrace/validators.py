"""
Charitrace Validators

This module provides custom validation for the Charitrace application:
- Donation amounts and ISO currency codes
- Charity founding years
- Ethereum contract addresses used by the chain client
- Password strength, plugged into Django's AUTH_PASSWORD_VALIDATORS

All validators raise Django ValidationError on invalid input.
"""

import re
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.utils import timezone
from web3 import Web3


def validate_currency_code(value):
    """
    Validate a three-letter ISO 4217 currency code (case-insensitive).

    Raises:
        ValidationError: If value is not exactly three ASCII letters
    """
    if not value or not re.match(r'^[A-Za-z]{3}$', value):
        raise ValidationError("Currency must be a three-letter ISO code.")


def validate_founded_year(value):
    if value < 1800 or value > timezone.now().year:
        raise ValidationError("Founded year is out of range.")


def parse_donation_amount(raw):
    """
    Parse and validate a donation amount from request data.

    Accepts numbers or numeric strings and normalises them to a Decimal with
    two decimal places.

    Args:
        raw: Amount as received from the client

    Returns:
        Decimal: The amount, quantized to cents

    Raises:
        ValidationError: If the amount is missing, not numeric or not positive
    """
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Valid amount is required.")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Valid amount is required.")
    amount = amount.quantize(Decimal('0.01'))
    if amount <= 0:
        raise ValidationError("Valid amount is required.")
    return amount


def validate_contract_address(address):
    """
    Validate an Ethereum contract address.

    Raises:
        ValidationError: If the address is missing or not a valid hex address
    """
    if not address:
        raise ValidationError("Contract address is missing.")
    if not Web3.is_address(address):
        raise ValidationError(f"Contract address is not a valid Ethereum address: {address}")


class PasswordStrengthValidator:
    """
    Require mixed character classes in passwords.

    Rules enforced:
    - At least 8 characters
    - At least one uppercase and one lowercase letter
    - At least one digit
    - At least one special character
    """

    special_characters = r"""[!@#$%^&*()_+\-=\[\]{};':"\\|,.<>/?~`]"""

    def validate(self, password, user=None):
        errors = []
        if len(password or '') < 8:
            errors.append(ValidationError("Password must be at least 8 characters long.", code='password_too_short'))
        if not re.search(r'[A-Z]', password or ''):
            errors.append(ValidationError("Password must include at least one uppercase letter.", code='password_no_upper'))
        if not re.search(r'[a-z]', password or ''):
            errors.append(ValidationError("Password must include at least one lowercase letter.", code='password_no_lower'))
        if not re.search(r'\d', password or ''):
            errors.append(ValidationError("Password must include at least one number.", code='password_no_digit'))
        if not re.search(self.special_characters, password or ''):
            errors.append(ValidationError("Password must include at least one special character.", code='password_no_special'))
        if errors:
            raise ValidationError(errors)

    def get_help_text(self):
        return (
            "Your password must be at least 8 characters long and include an uppercase letter, "
            "a lowercase letter, a number and a special character."
        )
