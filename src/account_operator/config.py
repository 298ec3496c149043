"""Configuration management with validation.

Two layers of configuration exist:

1. ``Config`` - process configuration loaded once from environment variables.
2. ``OperatorSettings`` - feature flags and per-controller limits read from the
   operator ConfigMap. Settings are reloaded at the start of every reconciliation
   pass and passed explicitly into each component; nothing here is module state.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_ACCOUNT_CREATION_TIMEOUT_SECONDS = 1800
DEFAULT_MAX_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES_LIMIT = 50

RETRY_BACKOFF_BASE_SECONDS = 5
RETRY_BACKOFF_MAX_SECONDS = 900

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_OPERATOR_CONFIG_SIZE_BYTES = 256 * 1024

# Regions and partitions
AWS_DEFAULT_REGION = "us-east-1"
AWS_GOVCLOUD_REGION = "us-gov-east-1"
AWS_PARTITION = "aws"
AWS_GOVCLOUD_PARTITION = "aws-us-gov"

# ARN resource types
AWS_RESOURCE_TYPE_ROLE = "role"
AWS_RESOURCE_TYPE_POLICY = "policy"

# Controller names, used as MaxConcurrentReconciles.<name> keys
CONTROLLER_ACCOUNT = "account"
CONTROLLER_ACCOUNT_VALIDATION = "accountvalidation"
CONTROLLER_FEDERATED_ROLE = "awsfederatedrole"
CONTROLLER_FEDERATED_ACCOUNT_ACCESS = "awsfederatedaccountaccess"
CONTROLLERS: tuple[str, ...] = (
    CONTROLLER_ACCOUNT,
    CONTROLLER_ACCOUNT_VALIDATION,
    CONTROLLER_FEDERATED_ROLE,
    CONTROLLER_FEDERATED_ACCOUNT_ACCESS,
)

# ConfigMap keys
KEY_MOVE_ACCOUNT = "feature.validation_move_account"
KEY_TAG_ACCOUNT = "feature.validation_tag_account"
KEY_FEDRAMP = "fedramp"
KEY_ROOT_OU = "root"
KEY_SHARD_NAME = "shard-name"
KEY_EMAIL_DOMAIN = "account-email-domain"
KEY_EMAIL_PREFIX = "account-email-prefix"
KEY_CREATION_TIMEOUT = "account-creation-timeout"
MAX_RECONCILES_KEY_PREFIX = "MaxConcurrentReconciles."

VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"

_TRUE_VALUES = ("true", "1", "yes", "t", "y")
_FALSE_VALUES = ("false", "0", "no", "f", "n")


def parse_bool(value: str) -> bool:
    """Parse a boolean the way the ConfigMap values are written.

    Raises:
        ValueError: If the value is not a recognised boolean literal.
    """
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


@dataclass(frozen=True)
class OperatorSettings:
    """Feature flags and tuning read from the operator ConfigMap.

    An instance is built once per reconciliation pass and threaded into
    every call that needs it. Components never read flags from anywhere else.
    """

    move_account_enabled: bool = False
    tag_account_enabled: bool = False
    fedramp: bool = False
    root_ou_id: str = ""
    shard_name: str = ""
    account_email_domain: str = "example.com"
    account_email_prefix: str = "aws-accounts"
    account_creation_timeout_seconds: int = DEFAULT_ACCOUNT_CREATION_TIMEOUT_SECONDS
    max_concurrent_reconciles: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.account_creation_timeout_seconds < 1:
            errors.append("account-creation-timeout must be at least 1 second")

        for controller, value in self.max_concurrent_reconciles.items():
            if controller not in CONTROLLERS:
                errors.append(f"Unknown controller in MaxConcurrentReconciles: {controller}")
            elif not (1 <= value <= MAX_CONCURRENT_RECONCILES_LIMIT):
                errors.append(
                    f"MaxConcurrentReconciles.{controller} must be between 1 "
                    f"and {MAX_CONCURRENT_RECONCILES_LIMIT}"
                )

        if errors:
            error_msg = "Operator settings validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def region(self) -> str:
        """Default region for all provider clients."""
        return AWS_GOVCLOUD_REGION if self.fedramp else AWS_DEFAULT_REGION

    @property
    def partition(self) -> str:
        """ARN partition matching the region."""
        return AWS_GOVCLOUD_PARTITION if self.fedramp else AWS_PARTITION

    @property
    def console_signin_host(self) -> str:
        """Host serving the switch-role console page."""
        if self.fedramp:
            return "signin.amazonaws-us-gov.com"
        return "signin.aws.amazon.com"

    def iam_arn(self, account_id: str, resource_type: str, resource_id: str) -> str:
        """Construct an IAM ARN.

        arn:partition:iam::account-id:resource-type/resource-id
        """
        return f"arn:{self.partition}:iam::{account_id}:{resource_type}/{resource_id}"

    def managed_policy_arn(self, policy_name: str) -> str:
        """ARN of a provider-managed policy."""
        return f"arn:{self.partition}:iam::aws:policy/{policy_name}"

    def account_email(self, account_name: str) -> str:
        """Email address used when creating a new account."""
        return f"{self.account_email_prefix}+{account_name}@{self.account_email_domain}"

    def max_reconciles(self, controller: str) -> int:
        """Concurrency ceiling for a controller, defaulting to 1."""
        return self.max_concurrent_reconciles.get(controller, DEFAULT_MAX_CONCURRENT_RECONCILES)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> OperatorSettings:
        """Build settings from ConfigMap-style string data.

        Feature flags that cannot be parsed disable the feature. A malformed
        fedramp value is a configuration error because it changes the partition
        every ARN is built in.
        """

        def get_flag(key: str) -> bool:
            raw = data.get(key)
            if raw is None:
                logger.info(f"Feature flag '{key}' not set - feature is disabled")
                return False
            try:
                return parse_bool(str(raw))
            except ValueError:
                logger.info(f"Could not parse feature flag '{key}' - feature is disabled")
                return False

        def get_int(key: str, default: int) -> int:
            raw = data.get(key)
            if raw is None or str(raw) == "":
                return default
            try:
                return int(str(raw))
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {raw}") from e

        fedramp_raw = data.get(KEY_FEDRAMP)
        fedramp = False
        if fedramp_raw is not None:
            try:
                fedramp = parse_bool(str(fedramp_raw))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for configmap fedramp: {e}") from e

        max_reconciles: dict[str, int] = {}
        for key in data:
            if key.startswith(MAX_RECONCILES_KEY_PREFIX):
                controller = key[len(MAX_RECONCILES_KEY_PREFIX):]
                max_reconciles[controller] = get_int(key, DEFAULT_MAX_CONCURRENT_RECONCILES)

        defaults = cls()
        return cls(
            move_account_enabled=get_flag(KEY_MOVE_ACCOUNT),
            tag_account_enabled=get_flag(KEY_TAG_ACCOUNT),
            fedramp=fedramp,
            root_ou_id=str(data.get(KEY_ROOT_OU, "")),
            shard_name=str(data.get(KEY_SHARD_NAME, "")),
            account_email_domain=str(
                data.get(KEY_EMAIL_DOMAIN, defaults.account_email_domain)
            ),
            account_email_prefix=str(
                data.get(KEY_EMAIL_PREFIX, defaults.account_email_prefix)
            ),
            account_creation_timeout_seconds=get_int(
                KEY_CREATION_TIMEOUT, DEFAULT_ACCOUNT_CREATION_TIMEOUT_SECONDS
            ),
            max_concurrent_reconciles=max_reconciles,
        )


def load_operator_settings(path: Path | None) -> OperatorSettings:
    """Load operator settings from a ConfigMap YAML file.

    The file may hold either a bare mapping or a ``kind: ConfigMap`` manifest
    with a ``data`` section. A missing path yields default settings.

    Raises:
        ConfigurationError: If the file is unreadable, too large or malformed.
    """
    if path is None:
        return OperatorSettings()

    if not path.exists():
        raise ConfigurationError(f"Operator config file does not exist: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Failed to stat operator config {path}: {e}") from e

    if file_size > MAX_OPERATOR_CONFIG_SIZE_BYTES:
        raise ConfigurationError(
            f"Operator config exceeds maximum size of {MAX_OPERATOR_CONFIG_SIZE_BYTES} bytes"
        )

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read operator config {path}: {e}") from e

    if raw is None:
        return OperatorSettings()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Operator config must be a YAML mapping: {path}")

    if raw.get("kind") == "ConfigMap":
        raw = raw.get("data") or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"ConfigMap data must be a mapping: {path}")

    return OperatorSettings.from_mapping(raw)


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults."""

    # Enable structured audit logging for assume-role, account moves and retags
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Operator process configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    operator_config_file: Path | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Region override; otherwise derived from the fedramp setting each pass
    region: str | None = None

    # Behavior
    dry_run: bool = False

    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")
        elif not self.manifests_dir.is_dir():
            errors.append(f"MANIFESTS_DIR is not a directory: {self.manifests_dir}")

        if self.operator_config_file is not None and not self.operator_config_file.exists():
            errors.append(f"Operator config file does not exist: {self.operator_config_file}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.region is not None and not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def load_settings(self) -> OperatorSettings:
        """Read the operator ConfigMap; called once per reconciliation pass."""
        return load_operator_settings(self.operator_config_file)

    def region_for(self, settings: OperatorSettings) -> str:
        """Region for provider clients, honouring the AWS_REGION override."""
        return self.region or settings.region

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            MANIFESTS_DIR: Directory holding resource manifests (default: /manifests)
            OPERATOR_CONFIG_FILE: Operator ConfigMap YAML (optional)
            RECONCILE_INTERVAL: Seconds between reconciliation passes (default: 300)
            AWS_REGION: Override the region derived from the fedramp setting
            DRY_RUN: If "true", skip account creation and validation repairs (default: false)
            ENABLE_AUDIT_LOGGING: Emit security audit records (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        operator_config = os.environ.get("OPERATOR_CONFIG_FILE")

        return cls(
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            operator_config_file=Path(operator_config) if operator_config else None,
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            region=os.environ.get("AWS_REGION") or None,
            dry_run=get_bool("DRY_RUN", False),
            security=SecurityConfig(
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
