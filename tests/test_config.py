"""
Tests for configuration loading, settings and logger setup
"""

import logging
from pathlib import Path

import pytest

from proctor_calibration.calibration import CalibrationSettings
from proctor_calibration.utils import (
    get_logger,
    get_section,
    load_config,
    setup_logger,
    setup_logger_from_config,
)


def test_load_config(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("calibration:\n  quality_threshold: 0.9\nserver:\n  port: 9001\n")

    config = load_config(str(config_file))

    assert config['calibration']['quality_threshold'] == 0.9
    assert get_section(config, 'server') == {'port': 9001}
    assert get_section(config, 'logging') == {}


def test_load_empty_config(tmp_path):
    config_file = tmp_path / "empty.yaml"
    config_file.write_text("")
    assert load_config(str(config_file)) == {}


def test_load_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))


def test_section_must_be_a_mapping():
    with pytest.raises(ValueError):
        get_section({'calibration': [1, 2]}, 'calibration')


def test_shipped_config_matches_defaults():
    """config/config.yaml carries the same values as the built-in defaults"""
    config_path = Path(__file__).resolve().parent.parent / "config" / "config.yaml"
    settings = CalibrationSettings.from_config(load_config(str(config_path)))
    assert settings == CalibrationSettings()


class TestCalibrationSettings:
    """Tests for the CalibrationSettings dataclass"""

    def test_defaults(self):
        settings = CalibrationSettings()
        assert settings.quality_threshold == 0.8
        assert settings.min_gaze_points == 4
        assert settings.mm_per_pixel == 0.2
        assert settings.blink_ear_threshold == 0.25

    def test_from_config(self):
        settings = CalibrationSettings.from_config({
            'calibration': {'quality_threshold': '0.75', 'min_gaze_points': 6.0, 'unknown': 1}
        })
        assert settings.quality_threshold == 0.75
        assert settings.min_gaze_points == 6
        assert isinstance(settings.min_gaze_points, int)

    def test_from_empty_config(self):
        assert CalibrationSettings.from_config(None) == CalibrationSettings()

    @pytest.mark.parametrize("kwargs", [
        {'quality_threshold': 1.5},
        {'min_gaze_points': 3},
        {'mm_per_pixel': 0},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            CalibrationSettings(**kwargs)


class TestLogger:
    """Tests for logger setup"""

    def test_setup_logger_console_only(self):
        logger = setup_logger(name="proctor_calibration.test", log_level="DEBUG")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1

    def test_setup_logger_does_not_stack_handlers(self, tmp_path):
        setup_logger(name="proctor_calibration.test_file", log_dir=str(tmp_path))
        logger = setup_logger(name="proctor_calibration.test_file", log_dir=str(tmp_path))

        assert len(logger.handlers) == 2
        assert len(list(tmp_path.glob("calibration_*.log"))) == 1
        for handler in logger.handlers:
            handler.close()

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logger(name="proctor_calibration.test_level", log_level="LOUD")

    def test_setup_from_config(self, tmp_path):
        config = {'logging': {
            'level': 'WARNING',
            'log_dir': str(tmp_path),
            'log_file': 'session.log',
            'console': False,
        }}
        logger = setup_logger_from_config(config, name="proctor_calibration.test_config")

        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert (tmp_path / 'session.log').exists()
        for handler in logger.handlers:
            handler.close()

    def test_setup_from_empty_config(self):
        logger = setup_logger_from_config({}, name="proctor_calibration.test_empty")
        assert logger.level == logging.INFO

    def test_session_logger_prefixes_messages(self, caplog):
        log = get_logger("proctor_calibration.test_session", session="127.0.0.1:5000")
        with caplog.at_level(logging.INFO, logger="proctor_calibration.test_session"):
            log.info("Calibration step completed")
        assert "[127.0.0.1:5000] Calibration step completed" in caplog.text
