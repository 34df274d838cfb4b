"""Tests for settings loading and validation."""

import pytest

from config import DEFAULTS, SettingsError, get_settings, validate_settings
from config.lib.load_settings_conf import load_settings_conf

def write_conf(directory, body: str) -> None:
    (directory / 'settings.conf').write_text(body)

def test_missing_settings_file(tmp_path):
    """Test that a directory without settings.conf is rejected."""
    with pytest.raises(SettingsError, match="Settings file not found"):
        load_settings_conf(str(tmp_path))

def test_settings_file_overrides_defaults(tmp_path):
    """Test that values from settings.conf win and defaults fill the rest."""
    write_conf(tmp_path, (
        "[DEFAULT]\n"
        "db_url = postgresql://app@db:26257/orders\n"
        "sweep_page_size = 50\n"
    ))

    settings = get_settings(str(tmp_path))

    assert settings['db_url'] == "postgresql://app@db:26257/orders"
    assert settings['sweep_page_size'] == 50
    assert settings['refund_lock_timeout_seconds'] == 300
    assert settings['platform_fee_percent'] == 5

def test_settings_file_requires_db_url(tmp_path):
    """Test that a settings file without db_url is rejected."""
    write_conf(tmp_path, "[DEFAULT]\nsweep_page_size = 50\n")

    with pytest.raises(SettingsError, match="db_url"):
        load_settings_conf(str(tmp_path))

def test_defaults_validate():
    """Test that the shipped defaults are valid and become integers."""
    settings = validate_settings(DEFAULTS)

    assert settings['fulfillment_start_sla_hours'] == 72
    assert settings['fulfillment_sla_days'] == 7
    assert settings['offer_accepted_window_hours'] == 24
    assert settings['sweep_time_budget_seconds'] == 45

@pytest.mark.parametrize("key,value,message", [
    ('sweep_page_size', 'lots', "is not an integer"),
    ('refund_lock_timeout_seconds', '0', "must be at least 1"),
    ('platform_fee_percent', '150', "between 0 and 100"),
])
def test_invalid_values_are_reported(key, value, message):
    """Test that bad values raise SettingsError naming the problem."""
    settings = dict(DEFAULTS, **{key: value})

    with pytest.raises(SettingsError, match=message):
        validate_settings(settings)

def test_missing_key_is_reported():
    """Test that dropping a required integer setting is reported."""
    settings = dict(DEFAULTS)
    del settings['sweep_interval_seconds']

    with pytest.raises(SettingsError, match="sweep_interval_seconds"):
        validate_settings(settings)

def test_reminder_hours_parse_to_sorted_lists():
    """Test that reminder offsets are read as sorted hour lists."""
    settings = validate_settings(dict(DEFAULTS, pickup_reminder_hours='72, 24,48'))

    assert settings['pickup_reminder_hours'] == [24, 48, 72]
    assert settings['receipt_reminder_hours'] == [24, 72, 168]
    assert settings['auto_complete_delivered_days'] == 14
    assert settings['escalate_to_admin_days'] == 14

@pytest.mark.parametrize("value,message", [
    ('24,soon', "is not a list of integers"),
    ('-1,24', "must not be negative"),
])
def test_invalid_reminder_hours_are_reported(value, message):
    """Test that unusable reminder offsets raise SettingsError."""
    settings = dict(DEFAULTS, fulfillment_reminder_hours=value)

    with pytest.raises(SettingsError, match=message):
        validate_settings(settings)
