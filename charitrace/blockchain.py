"""
Charitrace Blockchain Client

Thin wrapper around the deployed donation-ledger smart contract:
- Submitting a donation record and waiting for it to be mined
- Reading donations and per-charity fund flows back from the contract
- Validating the blockchain settings at startup

The client never touches the database. Failures are raised as ChainError
(reads) or ChainSubmissionError (writes) so callers can decide how to
recover.
"""

import json
import logging
import os
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from web3 import Web3
from web3.exceptions import Web3Exception

from .validators import validate_contract_address

logger = logging.getLogger(__name__)

NETWORKS = {
    'localhost': {'url': 'http://127.0.0.1:8545', 'chain_id': 31337, 'name': 'Localhost'},
    'sepolia': {'url': 'https://sepolia.infura.io/v3/{key}', 'chain_id': 11155111, 'name': 'Sepolia Testnet'},
    'mainnet': {'url': 'https://mainnet.infura.io/v3/{key}', 'chain_id': 1, 'name': 'Ethereum Mainnet'},
}

# Amounts are stored on-chain with 18 decimals, the same scale as ether/wei.
AMOUNT_UNIT = 'ether'

with open(os.path.join(os.path.dirname(__file__), 'contract_abi.json')) as fh:
    CONTRACT_ABI = json.load(fh)


class ChainError(Exception):
    """A call to the blockchain node or contract failed."""


class ChainSubmissionError(ChainError):
    """A donation could not be recorded on-chain (RPC, signing or revert)."""


def network_rpc_url(network, infura_api_key=''):
    config = NETWORKS.get(network)
    if config is None:
        return None
    return config['url'].format(key=infura_api_key or '')


def validate_blockchain_settings():
    """
    Check the blockchain settings and describe anything that is wrong.

    The application still starts with a broken configuration; donations are
    then recorded as pending retry until the settings are fixed.

    Returns:
        list: Human-readable problems, empty when the configuration is usable
    """
    problems = []
    network = settings.BLOCKCHAIN_NETWORK

    try:
        validate_contract_address(settings.CONTRACT_ADDRESS)
    except ValidationError as e:
        problems.extend(e.messages)

    if not settings.BLOCKCHAIN_RPC_URL and network not in NETWORKS:
        problems.append(f"Unsupported BLOCKCHAIN_NETWORK: {network}. Supported: {', '.join(NETWORKS)}")

    if network in ('sepolia', 'mainnet') and not settings.BLOCKCHAIN_RPC_URL and not settings.INFURA_API_KEY:
        problems.append("INFURA_API_KEY is required for Sepolia/Mainnet network")

    private_key = settings.BLOCKCHAIN_PRIVATE_KEY
    if not private_key:
        problems.append("BLOCKCHAIN_PRIVATE_KEY is required for sending transactions")
    elif not private_key.startswith('0x') or len(private_key) != 66:
        problems.append("BLOCKCHAIN_PRIVATE_KEY should be a 0x-prefixed 32-byte hex string")

    return problems


class ChainClient:
    """
    Client for the donation-ledger contract.

    Holds a web3 connection, the signing account and the contract handle.
    A client built without a contract address or private key can still be
    constructed; every call on it then fails with a ChainError.

    Args:
        rpc_url: JSON-RPC endpoint of the node
        contract_address: Address of the deployed contract
        private_key: Key of the account that signs recordDonation calls
        chain_id: Expected chain id (read from the node when None)
        tx_timeout: Seconds to wait for a submitted transaction to be mined
        default_currency: Currency recorded when a donation has none
    """

    def __init__(self, rpc_url, contract_address, private_key, chain_id=None, tx_timeout=120, default_currency='RON'):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.tx_timeout = tx_timeout
        self.default_currency = default_currency
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': 30})) if rpc_url else None
        self.contract = None
        self.account = None
        self.configuration_error = None

        try:
            if self.web3 is None:
                raise ValueError("No RPC URL configured")
            validate_contract_address(contract_address)
            if not private_key:
                raise ValueError("No signing key configured")
            self.account = self.web3.eth.account.from_key(private_key)
            self.contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(contract_address),
                abi=CONTRACT_ABI,
            )
        except (ValidationError, ValueError) as e:
            message = '; '.join(e.messages) if isinstance(e, ValidationError) else str(e)
            self.configuration_error = message
            logger.error("Blockchain client disabled: %s", message)
        else:
            logger.info("Chain client ready for contract %s via %s", self.contract.address, rpc_url)

    @classmethod
    def from_settings(cls):
        rpc_url = settings.BLOCKCHAIN_RPC_URL or network_rpc_url(settings.BLOCKCHAIN_NETWORK, settings.INFURA_API_KEY)
        network = NETWORKS.get(settings.BLOCKCHAIN_NETWORK)
        return cls(
            rpc_url=rpc_url,
            contract_address=settings.CONTRACT_ADDRESS,
            private_key=settings.BLOCKCHAIN_PRIVATE_KEY,
            chain_id=network['chain_id'] if network and not settings.BLOCKCHAIN_RPC_URL else None,
            tx_timeout=settings.BLOCKCHAIN_TX_TIMEOUT,
            default_currency=settings.DEFAULT_CHAIN_CURRENCY,
        )

    @property
    def is_configured(self):
        return self.contract is not None

    def _require_contract(self, error_class=ChainError):
        if self.contract is None:
            raise error_class(f"Chain client is not configured: {self.configuration_error}")

    def record_donation(self, donation):
        """
        Record a donation on the contract and wait until it is mined.

        Args:
            donation: Mapping with transaction_id, donor_id, charity_id,
                project_id, amount, currency and anonymous

        Returns:
            dict: transaction_hash (0x-prefixed hex), block_number (int) and
            gas_used (str)

        Raises:
            ChainSubmissionError: On RPC failure, signing failure, timeout or
                a reverted transaction
        """
        self._require_contract(ChainSubmissionError)
        project_id = donation.get('project_id')
        donor_id = donation.get('donor_id')

        try:
            call = self.contract.functions.recordDonation(
                str(donation['transaction_id']),
                '' if donor_id is None else str(donor_id),
                str(donation['charity_id']),
                '' if project_id is None else str(project_id),
                Web3.to_wei(Decimal(str(donation['amount'])), AMOUNT_UNIT),
                donation.get('currency') or self.default_currency,
                bool(donation.get('anonymous')),
            )
            tx = call.build_transaction({
                'from': self.account.address,
                'nonce': self.web3.eth.get_transaction_count(self.account.address, 'pending'),
                'chainId': self.chain_id or self.web3.eth.chain_id,
            })
            signed = self.web3.eth.account.sign_transaction(tx, self.account.key)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("Donation %s submitted in transaction %s", donation['transaction_id'], Web3.to_hex(tx_hash))

            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainSubmissionError(f"Failed to record donation {donation['transaction_id']}: {e}") from e

        if receipt['status'] != 1:
            raise ChainSubmissionError(
                f"Transaction {Web3.to_hex(receipt['transactionHash'])} reverted in block {receipt['blockNumber']}"
            )

        logger.info("Donation %s confirmed in block %s", donation['transaction_id'], receipt['blockNumber'])
        return {
            'transaction_hash': Web3.to_hex(receipt['transactionHash']),
            'block_number': int(receipt['blockNumber']),
            'gas_used': str(receipt['gasUsed']),
        }

    def get_donation(self, transaction_id):
        """
        Read a donation back from the contract.

        Returns:
            dict: The on-chain donation; donor_id is empty when the contract
            has no record of the transaction id
        """
        self._require_contract()
        try:
            donor_id, charity_id, project_id, amount, currency, timestamp, anonymous = (
                self.contract.functions.getDonation(transaction_id).call()
            )
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read donation {transaction_id}: {e}") from e

        return {
            'transaction_id': transaction_id,
            'donor_id': donor_id,
            'charity_id': charity_id,
            'project_id': project_id,
            'amount': str(Web3.from_wei(amount, AMOUNT_UNIT)),
            'currency': currency,
            'timestamp': datetime.fromtimestamp(timestamp, tz=dt_timezone.utc).isoformat() if timestamp else None,
            'anonymous': anonymous,
        }

    def get_donations_by_charity(self, charity_id):
        self._require_contract()
        try:
            transaction_ids = self.contract.functions.getDonationsByCharity(str(charity_id)).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to list donations for charity {charity_id}: {e}") from e
        return [self.get_donation(transaction_id) for transaction_id in transaction_ids]

    def get_charity_flow(self, charity_id):
        """Return the contract's received/disbursed/balance totals for a charity."""
        self._require_contract()
        try:
            received, disbursed, balance = self.contract.functions.getCharityFlow(str(charity_id)).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read fund flow for charity {charity_id}: {e}") from e

        return {
            'charity_id': str(charity_id),
            'total_received': str(Web3.from_wei(received, AMOUNT_UNIT)),
            'total_disbursed': str(Web3.from_wei(disbursed, AMOUNT_UNIT)),
            'balance': str(Web3.from_wei(balance, AMOUNT_UNIT)),
        }
