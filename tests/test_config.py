"""
Scheduler settings: defaults, loose mappings and step parsing.
"""

import pytest

from config import SchedulerSettings, parse_steps
from errors import ValidationError


def test_documented_defaults():
    settings = SchedulerSettings.from_dict(None)

    assert settings.new_cards_per_day == 20
    assert settings.max_reviews_per_day == 9999
    assert settings.starting_ease == 2.5
    assert settings.easy_bonus == 1.3
    assert settings.hard_interval == 1.2
    assert settings.learning_steps == (1, 10)
    assert settings.review_order == 'reviewsBeforeNew'


def test_missing_and_null_fields_fall_back():
    settings = SchedulerSettings.from_dict({'newCardsPerDay': None, 'easyBonus': 1.5, 'unknownField': 'x'})

    assert settings.new_cards_per_day == 20
    assert settings.easy_bonus == 1.5


def test_snake_and_camel_case_keys():
    settings = SchedulerSettings.from_dict({'max_reviews_per_day': 50, 'graduatingIntervalDays': 2})

    assert settings.max_reviews_per_day == 50
    assert settings.graduating_interval_days == 2


def test_learning_mode_preset():
    assert SchedulerSettings.from_dict({'learningMode': 'normal'}).learning_steps == (1, 10, 60)
    explicit = SchedulerSettings.from_dict({'learningMode': 'deep', 'learningSteps': '5m'})
    assert explicit.learning_steps == (5,)


def test_invalid_review_order():
    with pytest.raises(ValidationError):
        SchedulerSettings.from_dict({'reviewOrder': 'random'})


def test_numeric_strings_are_coerced():
    settings = SchedulerSettings.from_dict({'newCardsPerDay': '20', 'easyBonus': '1.5', 'maximumIntervalDays': 365.0})

    assert settings.new_cards_per_day == 20
    assert isinstance(settings.new_cards_per_day, int)
    assert settings.easy_bonus == 1.5
    assert isinstance(settings.maximum_interval_days, int)


@pytest.mark.parametrize('data', [
    {'newCardsPerDay': 'twenty'},
    {'newCardsPerDay': 2.5},
    {'newCardsPerDay': -1},
    {'newCardsPerDay': True},
    {'easyBonus': float('nan')},
    {'startingEase': [2.5]},
    {'learningSteps': 5},
    {'relearningSteps': {'a': 1}},
    {'minimumIntervalDays': 30, 'maximumIntervalDays': 10},
])
def test_invalid_values_are_rejected(data):
    with pytest.raises(ValidationError):
        SchedulerSettings.from_dict(data)


def test_non_mapping_is_rejected():
    with pytest.raises(ValidationError):
        SchedulerSettings.from_dict(['newCardsPerDay', 5])


def test_direct_construction_is_typed_too():
    settings = SchedulerSettings(new_cards_per_day='3', learning_steps=['1m', '10m'])
    assert settings.new_cards_per_day == 3
    assert settings.learning_steps == (1, 10)


@pytest.mark.parametrize('steps, minutes', [
    ('1m 10m', [1, 10]),
    ('1m 10m 1d', [1, 10, 1440]),
    ('10 1h', [10, 60]),
    ('1.5m', [1.5]),
    ([1, 10], [1, 10]),
    ('', []),
    (None, []),
])
def test_parse_steps(steps, minutes):
    assert parse_steps(steps) == minutes


def test_parse_steps_skips_bad_tokens():
    assert parse_steps('abc 5m 0m -3m') == [5]


def test_to_dict_roundtrip():
    settings = SchedulerSettings(relearning_steps=(5, 20), review_order='newFirst')
    assert SchedulerSettings.from_dict(settings.to_dict()) == settings
