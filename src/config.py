"""
Configuration

Service settings come from environment variables with sensible defaults.
Scheduler settings are per-user configuration handed to the core as a plain
mapping; missing or null fields fall back to the documented defaults.
"""

import logging
import math
import os
import re
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

from errors import ValidationError

logger = logging.getLogger(__name__)


# --- Service configuration (environment) ---

CARD_DB_PATH = os.environ.get('CARD_DB_PATH', '/tmp/lifecycle.db')
MEDIA_BUCKET = os.environ.get('MEDIA_BUCKET', 'card-media')
MEDIA_PUBLIC_BASE_URL = os.environ.get(
    'MEDIA_PUBLIC_BASE_URL', f'https://{MEDIA_BUCKET}.s3.amazonaws.com'
)
JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY', 'dev-secret-change-in-production')
JWT_ACCESS_TOKEN_EXPIRES = int(os.environ.get('JWT_ACCESS_TOKEN_EXPIRES', 3600))  # 1 hour
IMPORT_FAILURE_THRESHOLD = float(os.environ.get('IMPORT_FAILURE_THRESHOLD', 0.10))
REQUEUE_HORIZON_SECONDS = int(os.environ.get('REQUEUE_HORIZON_SECONDS', 60))
SETTINGS_CACHE_TTL = int(os.environ.get('SETTINGS_CACHE_TTL', 300))  # 5 minutes default
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
MAX_QUEUE_SIZE = int(os.environ['MAX_QUEUE_SIZE']) if os.environ.get('MAX_QUEUE_SIZE') else None


# --- Scheduler settings ---

REVIEW_ORDERS = ('reviewsBeforeNew', 'newFirst', 'mixed')

LEARNING_MODE_STEPS = {
    'fast': [1, 10],
    'normal': [1, 10, 60],
    'deep': [1, 10, 60, 180],
}

_STEP_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)(m|h|d)?$')
_UNIT_MINUTES = {'m': 1, 'h': 60, 'd': 24 * 60}


def parse_steps(steps) -> List[float]:
    """
    Parses a step ladder into minutes.

    Accepts a list of minute values or an Anki-style string:
        "1m 10m"     -> [1, 10]
        "1m 10m 1d"  -> [1, 10, 1440]
        "10 1h"      -> [10, 60]   (bare numbers are minutes)

    Malformed and non-positive steps are skipped with a warning.
    """
    if steps is None:
        return []
    if isinstance(steps, str):
        tokens = steps.strip().split()
    elif isinstance(steps, (list, tuple)):
        tokens = list(steps)
    else:
        raise ValidationError(f"Step ladder must be a list or a string, got {steps!r}")

    minutes = []
    for token in tokens:
        if isinstance(token, (int, float)) and not isinstance(token, bool):
            value = float(token)
        else:
            match = _STEP_PATTERN.match(str(token).strip().lower())
            if not match:
                logger.warning(f"Invalid step format: {token!r}, skipping")
                continue
            value = float(match.group(1)) * _UNIT_MINUTES[match.group(2) or 'm']
        if value > 0:
            minutes.append(value)
        else:
            logger.warning(f"Non-positive step {token!r}, skipping")
    return minutes


_CAMEL_KEYS = {
    'learningSteps': 'learning_steps',
    'relearningSteps': 'relearning_steps',
    'graduatingIntervalDays': 'graduating_interval_days',
    'easyIntervalDays': 'easy_interval_days',
    'startingEase': 'starting_ease',
    'easyBonus': 'easy_bonus',
    'hardInterval': 'hard_interval',
    'intervalModifier': 'interval_modifier',
    'newIntervalMultiplier': 'new_interval_multiplier',
    'minimumIntervalDays': 'minimum_interval_days',
    'maximumIntervalDays': 'maximum_interval_days',
    'againDelayMinutes': 'again_delay_minutes',
    'newCardsPerDay': 'new_cards_per_day',
    'maxReviewsPerDay': 'max_reviews_per_day',
    'reviewOrder': 'review_order',
    'learningMode': 'learning_mode',
}


_FIELD_TYPES = {
    'graduating_interval_days': int,
    'easy_interval_days': int,
    'minimum_interval_days': int,
    'maximum_interval_days': int,
    'new_cards_per_day': int,
    'max_reviews_per_day': int,
    'starting_ease': float,
    'easy_bonus': float,
    'hard_interval': float,
    'interval_modifier': float,
    'new_interval_multiplier': float,
    'again_delay_minutes': float,
}


def _coerce(name, value, kind):
    """Converts a setting to int or float; numeric strings are accepted, negatives are not."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r} is not a number")
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValidationError(f"Invalid {name}: {value!r}")
    if kind is int:
        if not number.is_integer():
            raise ValidationError(f"Invalid {name}: {value!r} is not a whole number")
        return int(number)
    return number


@dataclass(frozen=True)
class SchedulerSettings:
    """Scheduling parameters. Step ladders are in minutes."""

    learning_steps: Tuple[float, ...] = (1, 10)
    relearning_steps: Tuple[float, ...] = (10,)
    graduating_interval_days: int = 1
    easy_interval_days: int = 4
    starting_ease: float = 2.5
    easy_bonus: float = 1.3
    hard_interval: float = 1.2
    interval_modifier: float = 1.0
    new_interval_multiplier: float = 0.0
    minimum_interval_days: int = 1
    maximum_interval_days: int = 36500
    again_delay_minutes: float = 10
    new_cards_per_day: int = 20
    max_reviews_per_day: int = 9999
    review_order: str = 'reviewsBeforeNew'

    def __post_init__(self):
        for name, kind in _FIELD_TYPES.items():
            object.__setattr__(self, name, _coerce(name, getattr(self, name), kind))
        for ladder in ('learning_steps', 'relearning_steps'):
            object.__setattr__(self, ladder, tuple(parse_steps(getattr(self, ladder))))

        if self.review_order not in REVIEW_ORDERS:
            raise ValidationError(
                f"Invalid review order: {self.review_order!r} (expected one of {', '.join(REVIEW_ORDERS)})"
            )
        if self.minimum_interval_days > self.maximum_interval_days:
            raise ValidationError(
                f"minimum_interval_days ({self.minimum_interval_days}) is greater than "
                f"maximum_interval_days ({self.maximum_interval_days})"
            )

    @classmethod
    def from_dict(cls, data: Optional[dict]):
        """
        Builds settings from a loosely-typed mapping.

        snake_case and camelCase keys are both accepted. Missing keys and
        None values fall back to defaults. Explicit step ladders win over a
        ``learning_mode`` preset. Numeric strings are coerced; anything else
        that is not a valid setting raises ValidationError.
        """
        if data is not None and not isinstance(data, dict):
            raise ValidationError(f"Scheduler settings must be a mapping, got {type(data).__name__}")
        data = {_CAMEL_KEYS.get(key, key): value for key, value in (data or {}).items()}
        known = cls.__dataclass_fields__
        kwargs = {key: value for key, value in data.items() if key in known and value is not None}

        mode = data.get('learning_mode')
        if 'learning_steps' not in kwargs and isinstance(mode, str) and mode in LEARNING_MODE_STEPS:
            kwargs['learning_steps'] = LEARNING_MODE_STEPS[mode]
        return cls(**kwargs)

    def to_dict(self):
        data = asdict(self)
        data['learning_steps'] = list(self.learning_steps)
        data['relearning_steps'] = list(self.relearning_steps)
        return data
