"""
Configuration management and loading.

Handles the YAML settings consumed by the chat session and usage ledger.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

import yaml

from ..core.pricing import IMAGE_SIZES
from ..storage.db import DEFAULT_DB_PATH

WILDCARD = "*"
NO_ADMINS = "-"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class BudgetPeriod(Enum):
    """Accounting window user budgets are compared against."""
    DAILY = "daily"
    MONTHLY = "monthly"
    ALL_TIME = "all-time"


@dataclass(frozen=True)
class OpenAIConfig:
    """Request parameters for the completion API."""
    model: str
    max_tokens: int = 1200
    n_choices: int = 1
    temperature: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    image_size: str = "512x512"

    def __post_init__(self):
        """Validate request parameters."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.n_choices < 1:
            raise ValueError("n_choices must be >= 1")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if not -2 <= self.presence_penalty <= 2:
            raise ValueError("presence_penalty must be between -2 and 2")
        if not -2 <= self.frequency_penalty <= 2:
            raise ValueError("frequency_penalty must be between -2 and 2")
        if self.image_size not in IMAGE_SIZES:
            raise ValueError(f"image_size must be one of: {list(IMAGE_SIZES)}")


@dataclass(frozen=True)
class ConversationConfig:
    """Limits for per-chat conversation history."""
    max_history_size: int = 15
    max_conversation_age_minutes: int = 180
    assistant_prompt: str = "You are a helpful assistant."
    show_usage: bool = False
    stream_timeout_seconds: float = 60.0

    def __post_init__(self):
        """Validate conversation limits."""
        if self.max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        if self.max_conversation_age_minutes <= 0:
            raise ValueError("max_conversation_age_minutes must be > 0")
        if self.stream_timeout_seconds <= 0:
            raise ValueError("stream_timeout_seconds must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    """Prices used to turn usage into cost."""
    token_price: float = 0.002
    image_prices: Tuple[float, ...] = (0.016, 0.018, 0.02)
    transcription_price: float = 0.006

    def __post_init__(self):
        """Validate prices are non-negative and cover every image size."""
        if self.token_price < 0:
            raise ValueError("token_price must be >= 0")
        if self.transcription_price < 0:
            raise ValueError("transcription_price must be >= 0")
        if len(self.image_prices) != len(IMAGE_SIZES):
            raise ValueError(f"image_prices must have {len(IMAGE_SIZES)} values")
        if any(price < 0 for price in self.image_prices):
            raise ValueError("image_prices must be >= 0")


@dataclass(frozen=True)
class BudgetConfig:
    """Who may spend how much, and over which period.

    user_budgets is parallel to allowed_user_ids. Budget values stay raw
    strings so a malformed entry only affects the user it belongs to.
    """
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    guest_budget: float = 100.0
    admin_user_ids: Tuple[str, ...] = ()
    allowed_user_ids: Tuple[str, ...] = (WILDCARD,)
    user_budgets: Tuple[str, ...] = (WILDCARD,)

    def __post_init__(self):
        """Validate the guest budget."""
        if self.guest_budget < 0:
            raise ValueError("guest_budget must be >= 0")

    @property
    def allows_everyone(self) -> bool:
        return self.allowed_user_ids == (WILDCARD,)

    @property
    def unlimited_budgets(self) -> bool:
        return self.user_budgets == (WILDCARD,)


@dataclass(frozen=True)
class StorageConfig:
    """Location of the usage database."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class LoggingConfig:
    """Log output settings."""
    level: str = "INFO"

    def __post_init__(self):
        """Validate the log level."""
        if self.level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.level}. Must be one of {LOG_LEVELS}")


@dataclass(frozen=True)
class BotConfig:
    """Complete application configuration."""
    openai: OpenAIConfig
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(path: str) -> BotConfig:
    """Load and validate the configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BotConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> BotConfig:
    """Build a BotConfig from already decoded configuration data.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_top_keys = {'openai', 'conversation', 'pricing', 'budget', 'storage', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'openai' not in raw_config:
        raise ValueError("Missing required 'openai' section")
    openai_data = _section(raw_config, 'openai')
    if 'model' not in openai_data:
        raise ValueError("Missing required 'model' in openai")

    return BotConfig(
        openai=OpenAIConfig(**_parse_fields(openai_data, 'openai', {
            'model': _string,
            'max_tokens': _integer,
            'n_choices': _integer,
            'temperature': _number,
            'presence_penalty': _number,
            'frequency_penalty': _number,
            'image_size': _string,
        })),
        conversation=ConversationConfig(**_parse_fields(
            _section(raw_config, 'conversation'), 'conversation', {
                'max_history_size': _integer,
                'max_conversation_age_minutes': _integer,
                'assistant_prompt': _string,
                'show_usage': _boolean,
                'stream_timeout_seconds': _number,
            })),
        pricing=PricingConfig(**_parse_fields(_section(raw_config, 'pricing'), 'pricing', {
            'token_price': _number,
            'image_prices': _number_list,
            'transcription_price': _number,
        })),
        budget=BudgetConfig(**_parse_fields(_section(raw_config, 'budget'), 'budget', {
            'period': _budget_period,
            'guest_budget': _number,
            'admin_user_ids': _admin_ids,
            'allowed_user_ids': _id_list,
            'user_budgets': _id_list,
        })),
        storage=StorageConfig(**_parse_fields(_section(raw_config, 'storage'), 'storage', {
            'db_path': _string,
        })),
        logging=LoggingConfig(**_parse_fields(_section(raw_config, 'logging'), 'logging', {
            'level': lambda value, path: _string(value, path).upper(),
        })),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _parse_fields(
    data: Dict[str, Any],
    path: str,
    parsers: Dict[str, Callable[[Any, str], Any]],
) -> Dict[str, Any]:
    """Validate keys of a section and convert each value.

    Args:
        data: Section data
        path: Section name for error messages
        parsers: Converter per allowed key

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    unknown_keys = set(data.keys()) - set(parsers.keys())
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return {
        key: parsers[key](value, f"{path}.{key}")
        for key, value in data.items()
    }


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    return value


def _integer(value: Any, path: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _number(value: Any, path: str) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _boolean(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false")
    return value


def _number_list(value: Any, path: str) -> Tuple[float, ...]:
    if isinstance(value, str):
        value = [item.strip() for item in value.split(',')]
    if not isinstance(value, list):
        raise ValueError(f"'{path}' must be a list of numbers")
    try:
        return tuple(float(item) for item in value)
    except (TypeError, ValueError):
        raise ValueError(f"'{path}' must be a list of numbers")


def _id_list(value: Any, path: str) -> Tuple[str, ...]:
    """Accept a comma separated string or a list of IDs."""
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        items = str(value).split(',')
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise ValueError(f"'{path}' must be a comma separated string or a list")
    return tuple(item.strip() for item in items if item.strip())


def _admin_ids(value: Any, path: str) -> Tuple[str, ...]:
    ids = _id_list(value, path)
    if ids == (NO_ADMINS,):
        return ()
    return ids


def _budget_period(value: Any, path: str) -> BudgetPeriod:
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return BudgetPeriod(value.lower())
    except ValueError:
        valid_periods = [period.value for period in BudgetPeriod]
        raise ValueError(f"'{path}' must be one of: {valid_periods}")
