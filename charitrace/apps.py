"""
Charitrace Django Application Configuration

Sets up the application metadata and builds the long-lived blockchain
collaborators once per process. The chain client and the verification
ledger are constructed here and injected into the verification service,
which views and management commands fetch from the app config.
"""

import logging

from django.apps import AppConfig, apps

logger = logging.getLogger(__name__)


class CharitraceConfig(AppConfig):
    """
    Configuration class for the Charitrace Django application.

    Attributes:
        default_auto_field: Specifies BigAutoField for auto-generated primary keys
        name: The Python module name for this Django application
        verification_service: VerificationService built in ready()
    """
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'charitrace'
    verbose_name = 'Charitrace'
    verification_service = None

    def ready(self):
        """Build the chain client and verification service for this process."""
        from .blockchain import ChainClient, validate_blockchain_settings
        from .verification import VerificationLedger, VerificationService

        problems = validate_blockchain_settings()
        for problem in problems:
            logger.warning("Blockchain configuration: %s", problem)

        chain_client = ChainClient.from_settings()
        self.verification_service = VerificationService(chain_client, VerificationLedger())


def get_verification_service():
    """Return the process-wide VerificationService."""
    return apps.get_app_config('charitrace').verification_service
