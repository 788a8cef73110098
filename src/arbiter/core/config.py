"""
Configuration for Arbiter: TOML file, environment, command-line overrides.

Lookup order for a dot-notation key (first hit wins):
1. Runtime overrides (command-line flags, ConfigManager.set)
2. Environment variables (ARBITER_* prefix)
3. TOML file
4. The default passed by the caller
"""
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

T = TypeVar("T")

_TRUE_WORDS = ("true", "1", "yes", "on")
_ENV_TRUE = ("true", "yes", "on")
_ENV_FALSE = ("false", "no", "off")


class ConfigManager:
    """Layered configuration read through typed getters.

    Usage:
        config = ConfigManager(Path("config/default.toml"), overrides={"arbiter.dry_run": False})
        fee = config.get_decimal("settlement.platform_fee_percent", Decimal("4"))
        port = config.get_int("api.port", 8000)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "ARBITER_",
        overrides: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: TOML file; a missing file leaves the file layer empty
            env_prefix: Prefix for environment variable overrides
            overrides: Dot-notation values that win over everything else
        """
        self._config_path = config_path
        self._env_prefix = env_prefix
        self._overrides: dict[str, Any] = dict(overrides or {})
        self._data: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the TOML file."""
        if self._config_path is not None and self._config_path.exists():
            with open(self._config_path, "rb") as f:
                self._data = tomllib.load(f)

    # ============ Layers ============

    def env_key(self, key: str) -> str:
        """Environment variable name for a key.

        "database.path" -> "ARBITER_DATABASE_PATH",
        "arbiter.dry_run" -> "ARBITER_ARBITER_DRY_RUN".
        """
        return self._env_prefix + key.upper().replace(".", "_")

    def _from_file(self, key: str) -> tuple[bool, Any]:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return False, None
            node = node[part]
        return True, node

    def _from_env(self, key: str) -> tuple[bool, Any]:
        raw = os.environ.get(self.env_key(key))
        if raw is None:
            return False, None
        return True, self._parse_env_value(raw)

    @staticmethod
    def _parse_env_value(raw: str) -> Any:
        """Best-effort typing of an environment string (bool, number, list, str)."""
        lowered = raw.lower()
        if lowered in _ENV_TRUE:
            return True
        if lowered in _ENV_FALSE:
            return False

        try:
            return float(raw) if "." in raw else int(raw)
        except ValueError:
            pass

        if "," in raw:
            return [part.strip() for part in raw.split(",")]
        return raw

    def set(self, key: str, value: Any) -> None:
        """Set a runtime override."""
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw value with dot notation ("settlement.network_fee")."""
        if key in self._overrides:
            return self._overrides[key]

        for layer in (self._from_env, self._from_file):
            found, value = layer(key)
            if found:
                return value
        return default

    # ============ Typed getters ============

    def _typed(self, key: str, default: T, convert: Callable[[Any], T]) -> T:
        value = self.get(key)
        if value is None:
            return default
        return convert(value)

    def get_str(self, key: str, default: str = "") -> str:
        return self._typed(key, default, str)

    def get_int(self, key: str, default: int = 0) -> int:
        return self._typed(key, default, int)

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._typed(key, default, float)

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        """Decimal read through str() so TOML floats keep their written digits."""
        return self._typed(key, default, lambda value: Decimal(str(value)))

    def get_bool(self, key: str, default: bool = False) -> bool:
        def convert(value: Any) -> bool:
            if isinstance(value, str):
                return value.lower() in _TRUE_WORDS
            return bool(value)

        return self._typed(key, default, convert)

    @property
    def raw_data(self) -> dict[str, Any]:
        """Copy of the TOML data (for debugging)."""
        return self._data.copy()
