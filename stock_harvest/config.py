from __future__ import annotations

"""YAML/.env configuration loading and validated runtime resolution.

Every resolver follows the same order: CLI value, then environment
variable, then ``config/conf.yaml``, then the built-in default. Invalid
values raise ``ValueError``.
"""

import os
from typing import Any, Dict, List, Optional

import yaml

from stock_harvest.domain import Security
from stock_harvest.errors import ValidationError
from stock_harvest.transform.records import build_security

DEFAULT_SECURITIES = (
    {"code": "2330", "name": "台積電"},
    {"code": "2317", "name": "鴻海"},
    {"code": "2454", "name": "聯發科"},
    {"code": "2412", "name": "中華電"},
    {"code": "2308", "name": "台達電"},
)
DEFAULT_MAX_IN_FLIGHT = 2


def load_yaml(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_dotenv(path: str) -> None:
    """Load .env key/value pairs without overriding existing process env."""
    if not path or not os.path.exists(path):
        return
    with open(path, "r", encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export ") :].strip()
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if not key:
                continue
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                value = value[1:-1]
            if os.getenv(key) in (None, ""):
                os.environ[key] = value


def apply_env_defaults_from_config(cfg: Dict[str, Any]) -> None:
    """Use config values as env fallbacks, while keeping env as source of truth."""
    db_cfg = cfg.get("database") or {}
    mapping = {
        "POSTGRES_HOST": db_cfg.get("host"),
        "POSTGRES_PORT": db_cfg.get("port"),
        "POSTGRES_DB": db_cfg.get("name"),
        "POSTGRES_USER": db_cfg.get("user"),
        "POSTGRES_PASSWORD": db_cfg.get("password"),
        "POSTGRES_SCHEMA": db_cfg.get("schema"),
    }
    for key, value in mapping.items():
        if os.getenv(key) in (None, "") and value not in (None, ""):
            os.environ[key] = str(value)


def _configured_entries(raw: Any) -> List[Dict[str, str]]:
    if raw in (None, "", []):
        return [dict(item) for item in DEFAULT_SECURITIES]
    if isinstance(raw, str):
        raw = [x.strip() for x in raw.split(",")]
    if not isinstance(raw, list):
        raise ValueError(f"Invalid securities={raw!r}. Expected a list of codes or code/name mappings.")
    out = []
    for item in raw:
        if isinstance(item, dict):
            out.append({"code": str(item.get("code") or "").strip(), "name": str(item.get("name") or "")})
        else:
            out.append({"code": str(item).strip(), "name": ""})
    return out


def resolve_securities(cli_value: Optional[List[str]], cfg: Dict[str, Any]) -> List[Security]:
    """Resolve the security list to harvest.

    Names come from the config (or the built-in list) when known; a code
    without a configured name starts with its code as name until the
    listing source refreshes it.

    Raises
    ------
    ValueError
        On an invalid code or an empty resolved list.
    """
    configured = _configured_entries(cfg.get("securities"))
    names = {item["code"]: item["name"] for item in DEFAULT_SECURITIES}
    names.update({item["code"]: item["name"] for item in configured if item["name"]})

    env_value = os.getenv("HARVEST_SECURITIES")
    if cli_value:
        codes = [str(x).strip() for x in cli_value]
    elif env_value not in (None, ""):
        codes = [x.strip() for x in str(env_value).split(",")]
    else:
        codes = [item["code"] for item in configured]

    out: List[Security] = []
    seen = set()
    for code in codes:
        if not code or code in seen:
            continue
        seen.add(code)
        try:
            out.append(build_security(code, names.get(code) or code))
        except ValidationError as exc:
            raise ValueError(f"Invalid securities entry {code!r}: {exc}") from exc
    if not out:
        raise ValueError("Invalid securities: resolved list is empty.")
    return out


def resolve_max_in_flight(cli_value: Optional[int], pipeline_cfg: Dict[str, Any]) -> int:
    env_value = os.getenv("HARVEST_MAX_IN_FLIGHT")
    raw = (
        cli_value
        if cli_value is not None
        else (
            env_value
            if env_value not in (None, "")
            else pipeline_cfg.get("max_in_flight", DEFAULT_MAX_IN_FLIGHT)
        )
    )
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid max_in_flight={raw!r}. Expected integer >= 1.") from exc
    if value < 1:
        raise ValueError(f"Invalid max_in_flight={value}. Expected integer >= 1.")
    return value
