"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas and runs sanity checks
(address formats, timing relationships) before the orchestrator starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)


def _check_pubkey(value: Optional[str], name: str) -> Optional[str]:
    if value is None:
        return value
    try:
        Pubkey.from_string(value)
    except ValueError:
        raise ValueError(f"{name} is not a valid base58 address: {value!r}")
    return value


# ===== App Schema =====
class AppSection(BaseModel):
    """Deployment identity"""
    network: str = Field(pattern="^(devnet|testnet|mainnet-beta|localnet)$", description="Ledger cluster")
    program_id: str = Field(min_length=32, description="Escrow program address")
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$", description="LIVE submits transactions")

    @field_validator("program_id")
    @classmethod
    def validate_program_id(cls, v: str) -> str:
        return _check_pubkey(v, "program_id")


class LedgerSection(BaseModel):
    """Ledger RPC access"""
    rpc_url: str = Field(pattern="^https?://", description="JSON-RPC endpoint")
    commitment: str = Field(default="confirmed", pattern="^(processed|confirmed|finalized)$")
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    scan_max_attempts: int = Field(default=3, ge=1, le=10, description="Rate-limit retries for account scans")
    scan_base_delay_seconds: float = Field(default=1.0, ge=0)
    confirm_timeout_seconds: float = Field(default=60.0, gt=0, description="Confirmation polling deadline")
    confirm_poll_interval_seconds: float = Field(default=2.0, gt=0)
    signer_secret_env: str = Field(default="ESCROW_SIGNER_SECRET", min_length=1,
                                   description="Env var holding the base58 signer secret")


class EscrowSection(BaseModel):
    """Escrow deployment parameters"""
    settlement_mint: str = Field(description="Mint buyers pay with")
    fee_bps: int = Field(default=500, ge=0, le=10_000, description="Platform fee at delivery")
    fee_treasury: Optional[str] = Field(default=None, description="Fee recipient wallet")
    rent_reserve_lamports: int = Field(default=1_000_000, ge=0)
    admins: List[str] = Field(default_factory=list, description="Known admin set (empty: unknown)")

    @field_validator("settlement_mint")
    @classmethod
    def validate_settlement_mint(cls, v: str) -> str:
        return _check_pubkey(v, "settlement_mint")

    @field_validator("fee_treasury")
    @classmethod
    def validate_treasury(cls, v: Optional[str]) -> Optional[str]:
        return _check_pubkey(v, "fee_treasury")

    @field_validator("admins")
    @classmethod
    def validate_admins(cls, v: List[str]) -> List[str]:
        for admin in v:
            _check_pubkey(admin, "admins entry")
        return v


class TradingSection(BaseModel):
    """Liquidity service and trade guardrails"""
    liquidity_api_url: str = Field(pattern="^https?://")
    api_key_env: str = Field(default="BAGS_API_KEY", min_length=1)
    stable_mint: str
    debounce_ms: int = Field(default=500, ge=300, description="Quote debounce after last amount change")
    quote_max_age_seconds: float = Field(default=30.0, gt=0)
    default_slippage_bps: int = Field(default=100, ge=0, le=10_000)
    max_price_impact_pct: float = Field(default=5.0, gt=0, le=100)
    request_timeout_seconds: float = Field(default=15.0, gt=0)

    @field_validator("stable_mint")
    @classmethod
    def validate_stable_mint(cls, v: str) -> str:
        return _check_pubkey(v, "stable_mint")


class ContentSection(BaseModel):
    pin_url: str = Field(pattern="^https?://")
    gateway_url: str = Field(pattern="^https?://")
    jwt_env: str = Field(default="PINATA_JWT", min_length=1)


class RecordsSection(BaseModel):
    path: str = Field(min_length=1, description="Record store JSON file")


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/orchestrator.log", min_length=1)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=1, le=65535)


class AuditSection(BaseModel):
    file: str = Field(default="logs/audit.jsonl", min_length=1)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection
    ledger: LedgerSection
    escrow: EscrowSection
    trading: TradingSection
    content: ContentSection
    records: RecordsSection
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    audit: AuditSection = Field(default_factory=AuditSection)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    app_path = config_dir / "app.yaml"

    try:
        config = load_yaml_file(app_path)
        AppSchema(**config)
        logger.info("app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"app.yaml: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"app.yaml: top level must be a mapping - {e}")

    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Logical consistency checks that span fields."""
    errors = []
    config = AppSchema(**load_yaml_file(config_dir / "app.yaml"))

    if config.ledger.confirm_poll_interval_seconds >= config.ledger.confirm_timeout_seconds:
        errors.append(
            "ledger: confirm_poll_interval_seconds "
            f"({config.ledger.confirm_poll_interval_seconds}) must be below confirm_timeout_seconds "
            f"({config.ledger.confirm_timeout_seconds})"
        )
    if config.escrow.fee_bps > 0 and not config.escrow.fee_treasury:
        errors.append("escrow: fee_treasury is required when fee_bps > 0")
    if config.trading.quote_max_age_seconds * 1000 <= config.trading.debounce_ms:
        errors.append(
            f"trading: quote_max_age_seconds ({config.trading.quote_max_age_seconds}) must outlast "
            f"debounce_ms ({config.trading.debounce_ms})"
        )
    if config.app.mode == "LIVE" and config.app.network != "mainnet-beta":
        logger.warning(f"LIVE mode against {config.app.network}")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app(config_path)

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


def load_app_config(config_dir: str = "config") -> AppSchema:
    """
    Validate and load app.yaml.

    Raises:
        ValueError: listing every validation error
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError("Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors))
    return AppSchema(**load_yaml_file(Path(config_dir) / "app.yaml"))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
