"""Configuration management for the ramp settlement service"""

import os
import json
import logging
from decimal import Decimal
from typing import Dict, Any, List

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_json(name: str, default: Dict[str, Any]) -> Dict[str, Any]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"❌ CONFIG: {name} is not valid JSON ({e}) - using defaults")
        return default


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./ramp_settlement.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    CORS_ORIGINS: List[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # Fiat currency every quote is denominated in
    FIAT_CURRENCY = os.getenv("FIAT_CURRENCY", "INR")

    # Rate table. On-ramp rates are tokens per fiat unit, off-ramp rates are
    # fiat per token. Assets missing from a direction are not enabled for it.
    ONRAMP_RATES: Dict[str, Decimal] = {
        asset: Decimal(str(rate))
        for asset, rate in _env_json("ONRAMP_RATES", {"APT": "0.1", "USDC": "0.012"}).items()
    }
    OFFRAMP_RATES: Dict[str, Decimal] = {
        asset: Decimal(str(rate))
        for asset, rate in _env_json("OFFRAMP_RATES", {"APT": "10"}).items()
    }

    # On-ramp limits (fiat) and platform fee schedule
    ONRAMP_MIN_FIAT = _env_decimal("ONRAMP_MIN_FIAT", "10")
    ONRAMP_MAX_FIAT = _env_decimal("ONRAMP_MAX_FIAT", "100000")
    ONRAMP_FEE_PERCENT = _env_decimal("ONRAMP_FEE_PERCENT", "0.5")
    ONRAMP_FEE_MIN = _env_decimal("ONRAMP_FEE_MIN", "1")
    ONRAMP_FEE_MAX = _env_decimal("ONRAMP_FEE_MAX", "100")
    ONRAMP_GATEWAY_FEE = _env_decimal("ONRAMP_GATEWAY_FEE", "0")

    # Off-ramp limits (token) and platform fee schedule
    OFFRAMP_MIN_TOKEN = _env_decimal("OFFRAMP_MIN_TOKEN", "0.01")
    OFFRAMP_MAX_TOKEN = _env_decimal("OFFRAMP_MAX_TOKEN", "1000")
    OFFRAMP_FEE_PERCENT = _env_decimal("OFFRAMP_FEE_PERCENT", "2.5")
    OFFRAMP_FEE_MIN = _env_decimal("OFFRAMP_FEE_MIN", "5")
    OFFRAMP_FEE_MAX = _env_decimal("OFFRAMP_FEE_MAX", "500")
    OFFRAMP_MIN_NET_PAYOUT = _env_decimal("OFFRAMP_MIN_NET_PAYOUT", "5")

    # Asset table: decimals on the ledger and the on-chain transfer path.
    # An asset without a transfer_path settles through the simulated strategy.
    ASSETS: Dict[str, Dict[str, Any]] = _env_json("ASSETS", {
        "APT": {
            "decimals": 8,
            "transfer_path": "0x1::aptos_account::transfer",
            "coin_type": "0x1::aptos_coin::AptosCoin",
        },
        "USDC": {
            "decimals": 6,
            "transfer_path": None,
            "coin_type": None,
        },
    })
    NATIVE_ASSET = os.getenv("NATIVE_ASSET", "APT")

    # Ledger node
    LEDGER_NETWORK = os.getenv("LEDGER_NETWORK", "testnet")
    LEDGER_NODE_URL = os.getenv("LEDGER_NODE_URL", "https://fullnode.testnet.aptoslabs.com/v1")
    LEDGER_EXPLORER_URL = os.getenv("LEDGER_EXPLORER_URL", "https://explorer.aptoslabs.com/txn")
    LEDGER_API_KEY = os.getenv("LEDGER_API_KEY")
    LEDGER_REQUEST_TIMEOUT_SECONDS = float(os.getenv("LEDGER_REQUEST_TIMEOUT_SECONDS", "15"))
    FINALITY_TIMEOUT_SECONDS = float(os.getenv("FINALITY_TIMEOUT_SECONDS", "60"))
    LEDGER_MAX_GAS_AMOUNT = int(os.getenv("LEDGER_MAX_GAS_AMOUNT", "2000"))
    LEDGER_TX_EXPIRATION_SECONDS = int(os.getenv("LEDGER_TX_EXPIRATION_SECONDS", "600"))

    # Signer holding the service's token inventory (hex Ed25519 private key)
    SIGNER_PRIVATE_KEY = os.getenv("SIGNER_PRIVATE_KEY")
    SIGNER_GAS_RESERVE = _env_decimal("SIGNER_GAS_RESERVE", "0.01")
    SIGNER_QUEUE_SIZE = int(os.getenv("SIGNER_QUEUE_SIZE", "32"))
    SIGNER_QUEUE_TIMEOUT_SECONDS = float(os.getenv("SIGNER_QUEUE_TIMEOUT_SECONDS", "120"))
    SIGNER_LEASE_TTL_SECONDS = float(os.getenv("SIGNER_LEASE_TTL_SECONDS", "600"))
    SIGNER_LEASE_WAIT_SECONDS = float(os.getenv("SIGNER_LEASE_WAIT_SECONDS", "30"))

    # Funding source (testnet faucet or treasury top-up endpoint)
    FUNDING_URL = os.getenv("FUNDING_URL", "https://faucet.testnet.aptoslabs.com")
    FUNDING_ENABLED = _env_bool("FUNDING_ENABLED", "true")
    FUNDING_MIN_AMOUNT = _env_decimal("FUNDING_MIN_AMOUNT", "10")
    FUNDING_TIMEOUT_SECONDS = float(os.getenv("FUNDING_TIMEOUT_SECONDS", "30"))
    FUNDING_SETTLE_DELAY_SECONDS = float(os.getenv("FUNDING_SETTLE_DELAY_SECONDS", "3"))

    # Simulated transfer strategy delay window
    SIMULATED_TRANSFER_MIN_DELAY = float(os.getenv("SIMULATED_TRANSFER_MIN_DELAY", "2"))
    SIMULATED_TRANSFER_MAX_DELAY = float(os.getenv("SIMULATED_TRANSFER_MAX_DELAY", "3"))

    # Gas estimate used for "estimate transfer cost"
    GAS_ESTIMATE_UNITS = int(os.getenv("GAS_ESTIMATE_UNITS", "2000"))
    GAS_ESTIMATE_NON_NATIVE_MULTIPLIER = _env_decimal("GAS_ESTIMATE_NON_NATIVE_MULTIPLIER", "1.5")
    GAS_ESTIMATE_FALLBACK_UNIT_PRICE = int(os.getenv("GAS_ESTIMATE_FALLBACK_UNIT_PRICE", "100"))

    # Payment gateway (Razorpay-style orders API)
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.razorpay.com/v1")
    GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID")
    GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "")
    GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

    # Identity collaborator boundary
    IDENTITY_SHARED_SECRET = os.getenv("IDENTITY_SHARED_SECRET")

    # Off-ramp
    OFFRAMP_DEPOSIT_ADDRESS = os.getenv("OFFRAMP_DEPOSIT_ADDRESS")
    ALLOW_DEMO_DEPOSIT_ACCEPTANCE = _env_bool(
        "ALLOW_DEMO_DEPOSIT_ACCEPTANCE", "false" if IS_PRODUCTION else "true"
    )
    PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "simulated")
    PAYOUT_EXPECTED_DAYS = int(os.getenv("PAYOUT_EXPECTED_DAYS", "2"))
    PAYOUT_MAX_ATTEMPTS = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "5"))

    # Single-flight transfer claims
    TRANSFER_CLAIM_TTL_SECONDS = int(os.getenv("TRANSFER_CLAIM_TTL_SECONDS", "600"))

    # Background jobs
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")
    PAYOUT_JOB_INTERVAL_SECONDS = int(os.getenv("PAYOUT_JOB_INTERVAL_SECONDS", "30"))
    CLAIM_RECOVERY_INTERVAL_SECONDS = int(os.getenv("CLAIM_RECOVERY_INTERVAL_SECONDS", "60"))
    JOB_BATCH_SIZE = int(os.getenv("JOB_BATCH_SIZE", "50"))

    # Listing
    LIST_DEFAULT_LIMIT = int(os.getenv("LIST_DEFAULT_LIMIT", "10"))
    LIST_MAX_LIMIT = int(os.getenv("LIST_MAX_LIMIT", "100"))

    @classmethod
    def asset_config(cls, asset_type: str) -> Dict[str, Any]:
        """Asset entry for an asset type, empty if unknown"""
        return cls.ASSETS.get(asset_type.upper(), {}) if asset_type else {}

    @classmethod
    def transfer_budget_seconds(cls) -> float:
        """Longest a started real transfer can run: balance, funding, build, simulate, submit, finality"""
        return (
            5 * cls.LEDGER_REQUEST_TIMEOUT_SECONDS
            + cls.FUNDING_TIMEOUT_SECONDS
            + cls.FUNDING_SETTLE_DELAY_SECONDS
            + cls.FINALITY_TIMEOUT_SECONDS
        )

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when healthy)"""
        problems = []
        if not cls.DATABASE_URL:
            problems.append("DATABASE_URL is not set")
        if not cls.SIGNER_PRIVATE_KEY:
            problems.append("SIGNER_PRIVATE_KEY is not set - real transfers unavailable")
        if not cls.GATEWAY_KEY_ID or not cls.GATEWAY_KEY_SECRET:
            problems.append("GATEWAY_KEY_ID/GATEWAY_KEY_SECRET not set - checkout orders unavailable")
        if not cls.OFFRAMP_DEPOSIT_ADDRESS:
            problems.append("OFFRAMP_DEPOSIT_ADDRESS is not set")
        if cls.IS_PRODUCTION and cls.ALLOW_DEMO_DEPOSIT_ACCEPTANCE:
            problems.append("ALLOW_DEMO_DEPOSIT_ACCEPTANCE is enabled in production")
        if not cls.GATEWAY_WEBHOOK_SECRET:
            problems.append("GATEWAY_WEBHOOK_SECRET is not set - gateway webhooks will be rejected")
        budget = cls.transfer_budget_seconds()
        claim_budget = budget + cls.SIGNER_QUEUE_TIMEOUT_SECONDS + cls.SIGNER_LEASE_WAIT_SECONDS
        if cls.TRANSFER_CLAIM_TTL_SECONDS <= claim_budget:
            problems.append(
                f"TRANSFER_CLAIM_TTL_SECONDS ({cls.TRANSFER_CLAIM_TTL_SECONDS}) must exceed queue wait plus "
                f"the transfer budget ({claim_budget}s)"
            )
        if cls.SIGNER_LEASE_TTL_SECONDS <= budget:
            problems.append(
                f"SIGNER_LEASE_TTL_SECONDS ({cls.SIGNER_LEASE_TTL_SECONDS}) must exceed the transfer budget ({budget}s)"
            )
        for asset in set(cls.ONRAMP_RATES) | set(cls.OFFRAMP_RATES):
            if asset not in cls.ASSETS:
                problems.append(f"rate configured for unknown asset {asset}")
        return problems

    @classmethod
    def log_environment_config(cls):
        """Log the active configuration without secrets"""
        logger.info(f"🌍 ENVIRONMENT: {cls.CURRENT_ENVIRONMENT}")
        logger.info(f"🗄️ DATABASE: {cls.DATABASE_URL.split('@')[-1]}")
        logger.info(f"⛓️ LEDGER: {cls.LEDGER_NETWORK} via {cls.LEDGER_NODE_URL}")
        logger.info(f"💱 RATES: on-ramp={cls.ONRAMP_RATES} off-ramp={cls.OFFRAMP_RATES}")
        logger.info(f"🧪 DEMO_DEPOSIT_ACCEPTANCE: {cls.ALLOW_DEMO_DEPOSIT_ACCEPTANCE}")
        for problem in cls.validate():
            logger.warning(f"⚠️ CONFIG: {problem}")
