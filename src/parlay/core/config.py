"""
Settings for the settlement engine.

A key resolves to the first source that has it:
1. PARLAY_* environment variables ("execution.slippage" -> PARLAY_EXECUTION_SLIPPAGE)
2. Runtime overrides (CLI flags)
3. The TOML file
4. The caller's default, which each service keeps as a module constant

Prices and USDC amounts are written as strings in the file and are only
converted on read, by get_micro() or get_decimal(), so a value never passes
through a float on its way to the settlement math.
"""
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

from parlay.core.retry import ValidationError
from parlay.domain.money import to_micro

SECRET_KEYS = frozenset({"fees.platform_wallet_key", "signer.password"})
REDACTED = "***"

# (key, lowest allowed, highest allowed or None)
RANGE_CHECKS: tuple[tuple[str, Decimal, Optional[Decimal]], ...] = (
    ("execution.slippage", Decimal("0"), Decimal("1")),
    ("execution.max_price", Decimal("0.01"), Decimal("1")),
    ("execution.poll_attempts", Decimal("1"), None),
    ("execution.poll_backoff_ms", Decimal("0"), None),
    ("execution.min_hours_before_end", Decimal("0"), None),
    ("feed.batch_size", Decimal("1"), None),
    ("feed.poll_interval_seconds", Decimal("0"), None),
    ("fees.percent_numerator", Decimal("0"), None),
    ("fees.percent_denominator", Decimal("1"), None),
    ("resolution.repoll_timeout_seconds", Decimal("0"), None),
)

# "1" and "0" stay integers when coerced from the environment
_ENV_TRUE = ("true", "yes", "on")
_ENV_FALSE = ("false", "no", "off")
_TRUE_WORDS = _ENV_TRUE + ("1",)


def coerce_env_value(raw: str) -> Any:
    """Booleans and integers are converted; comma lists are split.

    Anything else, decimals included, stays a string.
    """
    lowered = raw.strip().lower()
    if lowered in _ENV_TRUE:
        return True
    if lowered in _ENV_FALSE:
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    if "," in raw:
        return [part.strip() for part in raw.split(",")]
    return raw


def _walk(data: dict[str, Any], dotted: str) -> tuple[bool, Any]:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return False, None
        node = node[part]
    return True, node


class ConfigManager:
    """Layered settings lookup for every parlay component.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        config.validate()
        slippage_micro = config.get_micro("execution.slippage", "0.025")
        attempts = config.get_int("execution.poll_attempts", 3)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "PARLAY_",
    ) -> None:
        self._config_path = config_path
        self._env_prefix = env_prefix
        self._file_data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the TOML file. Runtime overrides survive."""
        if self._config_path is None or not self._config_path.exists():
            self._file_data = {}
            return
        with open(self._config_path, "rb") as f:
            self._file_data = tomllib.load(f)

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def env_name(self, key: str) -> str:
        return self._env_prefix + key.upper().replace(".", "_")

    def _lookup(self, key: str) -> tuple[bool, Any]:
        env_value = os.environ.get(self.env_name(key))
        if env_value is not None:
            return True, coerce_env_value(env_value)
        if key in self._overrides:
            return True, self._overrides[key]
        return _walk(self._file_data, key)

    def get(self, key: str, default: Any = None) -> Any:
        found, value = self._lookup(key)
        return value if found else default

    def set_override(self, key: str, value: Any) -> None:
        """Pin a key for this process, e.g. from a CLI flag."""
        self._overrides[key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """A whole table from the file. Environment overrides are not merged."""
        found, value = _walk(self._file_data, section)
        return value if found and isinstance(value, dict) else {}

    def get_micro(self, key: str, default: str) -> int:
        """A price or USDC amount in micro-units."""
        return to_micro(str(self.get(key, default)))

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        value = self.get(key)
        return default if value is None else Decimal(str(value))

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_WORDS
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        return default if value is None else int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        return default if value is None else float(value)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        value = self.get(key)
        if value is None:
            return list(default or [])
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [part.strip() for part in value.split(",")]
        return [value]

    def validate(self) -> None:
        """Reject settings the engine cannot run with.

        Only keys that are set are checked; missing keys fall back to the
        reading service's default.

        Raises:
            ValidationError: Naming every bad setting at once.
        """
        problems = []
        for key, low, high in RANGE_CHECKS:
            raw = self.get(key)
            if raw is None:
                continue
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                problems.append(f"{key}={raw!r} is not a number")
                continue
            if value < low or (high is not None and value > high):
                allowed = f"between {low} and {high}" if high is not None else f"at least {low}"
                problems.append(f"{key}={raw} must be {allowed}")
        if problems:
            raise ValidationError("Invalid configuration: " + "; ".join(problems))

    @property
    def raw_data(self) -> dict[str, Any]:
        """The file's contents as loaded, secrets included."""
        return dict(self._file_data)

    def redacted(self) -> dict[str, Any]:
        """The file's contents with SECRET_KEYS masked, safe to log."""
        masked = {
            section: dict(values) if isinstance(values, dict) else values
            for section, values in self._file_data.items()
        }
        for key in SECRET_KEYS:
            section, _, name = key.partition(".")
            values = masked.get(section)
            if isinstance(values, dict) and values.get(name):
                values[name] = REDACTED
        return masked
