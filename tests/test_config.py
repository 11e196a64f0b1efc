from pathlib import Path

import pytest

import fan_control
from fan_control import (
    DEFAULT_CONFIG,
    ConfigurationInvalid,
    load_config,
    main,
    save_config,
    validate_config,
)


def write_config(path, zone, pwm_enable, log_file, **extra):
    lines = [
        f"thermal_zone = {zone}",
        f"pwm_enable = {pwm_enable}",
        f"log_file = {log_file}",
    ]
    lines += [f"{key} = {value}" for key, value in extra.items()]
    path.write_text("\n".join(lines) + "\n")
    return path


def test_load_config_parses_values(tmp_path):
    config_file = tmp_path / "fan_control.conf"
    config_file.write_text(
        "# comment\n"
        "\n"
        "temp_fan_off = 50\n"
        "temp_fan_on=60\n"
        "interval = 2.5\n"
        "verify_writes = no\n"
        "pwm_min = 10\n"
    )
    config = load_config(config_file)

    assert config['temp_fan_off'] == 50
    assert config['temp_fan_on'] == 60
    assert config['interval'] == 2.5
    assert config['verify_writes'] is False
    assert config['thermal_zone'] == DEFAULT_CONFIG['thermal_zone']
    assert 'pwm_min' not in config


def test_load_config_rejects_bad_number(tmp_path):
    config_file = tmp_path / "fan_control.conf"
    config_file.write_text("temp_fan_on = hot\n")
    with pytest.raises(ConfigurationInvalid, match="temp_fan_on"):
        load_config(config_file)


def test_explicit_config_must_exist(tmp_path):
    with pytest.raises(ConfigurationInvalid):
        load_config(tmp_path / "missing.conf")


def test_default_config_created_in_home(tmp_path, monkeypatch):
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
    config = load_config()

    created = tmp_path / ".config" / "fan_control" / "fan_control.conf"
    assert created.exists()
    assert config == DEFAULT_CONFIG
    # The generated file parses back to the defaults
    assert load_config(created) == DEFAULT_CONFIG


def test_save_config_round_trip(tmp_path):
    config_file = tmp_path / "fan_control.conf"
    settings = dict(DEFAULT_CONFIG, temp_fan_off=48, temp_fan_on=52, verify_writes=False)
    assert save_config(settings, config_file) is True
    assert load_config(config_file) == settings


def test_validate_config(sysfs):
    zone, pwm_enable = sysfs
    settings = dict(DEFAULT_CONFIG, thermal_zone=str(zone), pwm_enable=str(pwm_enable))
    validate_config(settings)

    with pytest.raises(ConfigurationInvalid, match="below"):
        validate_config(dict(settings, temp_fan_off=58))
    with pytest.raises(ConfigurationInvalid, match="interval"):
        validate_config(dict(settings, interval=0))
    with pytest.raises(ConfigurationInvalid, match="Thermal zone"):
        validate_config(dict(settings, thermal_zone=str(zone) + ".missing"))
    with pytest.raises(ConfigurationInvalid, match="PWM control"):
        validate_config(dict(settings, pwm_enable=str(pwm_enable) + ".missing"))


def test_main_runs_and_restores_auto(sysfs, tmp_path):
    zone, pwm_enable = sysfs
    log_file = tmp_path / "fan-control.log"
    config_file = write_config(tmp_path / "fan_control.conf", zone, pwm_enable, log_file)
    zone.write_text("40000\n")

    assert main(["--config", str(config_file), "-n", "2", "-i", "0.01"]) == 0

    assert pwm_enable.read_text() == "2"
    log = log_file.read_text()
    assert "Fan mode set to: OFF (temp: 40°C < 55°C) (mode 0)" in log
    assert "Fan control stopping - restoring automatic control" in log
    # "<timestamp> - <message>"
    first = log.splitlines()[0]
    assert first[4] == "-" and " - " in first


def test_main_refuses_inverted_thresholds(sysfs, tmp_path, monkeypatch):
    zone, pwm_enable = sysfs
    pwm_enable.write_text("0\n")
    config_file = write_config(tmp_path / "fan_control.conf", zone, pwm_enable,
                               tmp_path / "fan-control.log")
    writes = []
    monkeypatch.setattr(fan_control.PwmEnableControl, "set_mode",
                        lambda self, mode: writes.append(mode))

    code = main(["--config", str(config_file), "--temp-fan-off", "60", "--temp-fan-on", "58"])

    assert code == 1
    assert writes == []
    assert pwm_enable.read_text() == "0\n"


def test_main_refuses_missing_sensor(sysfs, tmp_path):
    zone, pwm_enable = sysfs
    config_file = write_config(tmp_path / "fan_control.conf", tmp_path / "nope", pwm_enable,
                               tmp_path / "fan-control.log")
    assert main(["--config", str(config_file)]) == 1


def test_status_command(sysfs, tmp_path, capsys):
    zone, pwm_enable = sysfs
    config_file = write_config(tmp_path / "fan_control.conf", zone, pwm_enable,
                               tmp_path / "fan-control.log")
    assert main(["status", "--config", str(config_file)]) == 0

    out = capsys.readouterr().out
    assert "Temperature:  52°C" in out
    assert "Fan mode:     AUTO (mode 2)" in out
    assert pwm_enable.read_text() == "2\n"


def test_set_command_saves_flags(sysfs, tmp_path):
    zone, pwm_enable = sysfs
    config_file = write_config(tmp_path / "fan_control.conf", zone, pwm_enable,
                               tmp_path / "fan-control.log")
    assert main(["set", "--config", str(config_file), "--temp-fan-off", "50", "-i", "3"]) == 0

    config = load_config(config_file)
    assert config['temp_fan_off'] == 50
    assert config['interval'] == 3.0
    assert config['thermal_zone'] == str(zone)
