"""YAML account configuration.

Example YAML (accounts.yaml):
    accounts:
      - account_id: acme-us
        seller_id: A1EXAMPLE
        marketplace_id: ATVPDKIKX0DER
        access_token: ${ACME_US_ACCESS_TOKEN}
        entities:
          - B000111111
          - entity_id: B000222222
            created_at: 2025-01-15
          - entity_id: B000333333
            active: false

Usage:
    from reports.lib.config_loader import load_accounts
    accounts = load_accounts("./accounts.yaml")
"""

from __future__ import annotations

import logging
import os
import re
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from reports.lib.errors import ConfigurationError
from reports.lib.models import Account, TrackedEntity

logger = logging.getLogger(__name__)

__all__ = ["expand_env_vars", "load_accounts", "parse_accounts", "validate_accounts_config"]

# Pattern for ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

REQUIRED_ACCOUNT_FIELDS = ("account_id", "seller_id", "marketplace_id")


def expand_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``$VAR`` references; unknown variables are left as-is.

    Example:
        >>> os.environ["ACME_TOKEN"] = "Atza|abc"
        >>> expand_env_vars("${ACME_TOKEN}")
        'Atza|abc'
    """

    def replacer(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def _parse_created_at(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid created_at timestamp: {value}", field=field, value=value
            ) from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ConfigurationError(f"Invalid created_at timestamp: {value!r}", field=field, value=value)


def _parse_entity(
    raw: Any,
    account_id: str,
    index: int,
    loaded_at: datetime,
    field: str,
) -> TrackedEntity:
    if isinstance(raw, (str, int)):
        raw = {"entity_id": str(raw)}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Entity must be an id or a mapping, got {type(raw).__name__}", field=field)

    entity_id = str(raw.get("entity_id") or "").strip()
    if not entity_id:
        raise ConfigurationError("Entity is missing entity_id", field=f"{field}.entity_id")

    # Entities without a timestamp keep their file order
    created_at = _parse_created_at(raw.get("created_at"), f"{field}.created_at")
    return TrackedEntity(
        entity_id=entity_id,
        account_id=account_id,
        created_at=created_at or loaded_at + timedelta(microseconds=index),
        active=bool(raw.get("active", True)),
    )


def _parse_account(raw: Any, index: int, loaded_at: datetime) -> Account:
    field = f"accounts[{index}]"
    if not isinstance(raw, dict):
        raise ConfigurationError("Each account must be a mapping", field=field)

    for name in REQUIRED_ACCOUNT_FIELDS:
        if not raw.get(name):
            raise ConfigurationError(f"Account is missing '{name}'", field=f"{field}.{name}")

    account_id = str(raw["account_id"])
    token = raw.get("access_token")
    if token is not None:
        token = expand_env_vars(str(token))
        if ENV_VAR_PATTERN.search(token):
            logger.warning(
                "access_token for account %s references an unset environment variable",
                account_id,
            )
            token = None

    raw_entities = raw.get("entities") or []
    if not isinstance(raw_entities, list):
        raise ConfigurationError("entities must be a list", field=f"{field}.entities")

    entities: List[TrackedEntity] = []
    seen = set()
    for entity_index, raw_entity in enumerate(raw_entities):
        entity = _parse_entity(
            raw_entity, account_id, entity_index, loaded_at, f"{field}.entities[{entity_index}]"
        )
        if entity.entity_id in seen:
            logger.warning("Duplicate entity %s in account %s ignored", entity.entity_id, account_id)
            continue
        seen.add(entity.entity_id)
        entities.append(entity)

    return Account(
        account_id=account_id,
        seller_id=str(raw["seller_id"]),
        marketplace_id=str(raw["marketplace_id"]),
        access_token=token or None,
        entities=entities,
    )


def parse_accounts(config: Dict[str, Any], *, loaded_at: Optional[datetime] = None) -> List[Account]:
    """Build accounts from an already-parsed configuration mapping."""
    if not isinstance(config, dict) or "accounts" not in config:
        raise ConfigurationError("Configuration must have an 'accounts' section", field="accounts")
    raw_accounts = config["accounts"]
    if not isinstance(raw_accounts, list) or not raw_accounts:
        raise ConfigurationError("'accounts' must be a non-empty list", field="accounts")

    loaded_at = loaded_at or datetime.now(timezone.utc)
    accounts = [_parse_account(raw, i, loaded_at) for i, raw in enumerate(raw_accounts)]

    ids = [a.account_id for a in accounts]
    duplicates = sorted({a for a in ids if ids.count(a) > 1})
    if duplicates:
        raise ConfigurationError(
            f"Duplicate account ids: {', '.join(duplicates)}", field="accounts", value=duplicates
        )
    return accounts


def load_accounts(config_path: Union[str, Path]) -> List[Account]:
    """Load accounts and their tracked entities from a YAML file.

    Raises:
        ConfigurationError: If the file is missing or the configuration is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            field="config",
            value=config_path,
        )

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}", field="config") from e

    if not config:
        raise ConfigurationError("Empty configuration file", field="config", value=config_path)

    accounts = parse_accounts(config)
    logger.info(
        "Loaded %d accounts (%d entities) from %s",
        len(accounts),
        sum(len(a.entities) for a in accounts),
        config_path,
    )
    return accounts


def validate_accounts_config(config_path: Union[str, Path]) -> List[str]:
    """Validate an accounts file and return error messages (empty if valid)."""
    try:
        load_accounts(config_path)
    except ConfigurationError as exc:
        return [exc.message]
    return []
