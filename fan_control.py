#!/usr/bin/env python3
"""
Fan Control Daemon for Linux
Switches a laptop fan between OFF and AUTO modes based on CPU temperature,
for hardware whose pwm_enable only supports 0 (off) and 2 (auto)
"""

import os
import sys
import time
import signal
import argparse
import logging
import threading
from enum import IntEnum
from pathlib import Path
from typing import Callable, Dict, Optional

from thermal_sensor import SensorUnavailable, ThermalSensor

logger = logging.getLogger("fan_control")

LOG_FORMAT = '%(asctime)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

TREND_LOG_INTERVAL = 60.0  # Seconds between periodic temperature lines
TREND_LOG_DELTA = 5        # Degrees of movement that forces a temperature line


class ConfigurationInvalid(Exception):
    """Settings the daemon refuses to start with"""


class ActuationFailed(Exception):
    """A fan mode write was rejected or did not take effect"""


class FanMode(IntEnum):
    """Values of the hwmon pwmN_enable register"""
    OFF = 0
    MANUAL = 1  # Rejected by asus-nb-wmi, never selected
    AUTO = 2


SUPPORTED_MODES = (FanMode.OFF, FanMode.AUTO)


class SignalWaiter:
    """Interruptible sleep that takes SIGINT/SIGTERM only while waiting

    The signals stay blocked for the lifetime of the context, so they can
    never land in the middle of a pwm_enable write. They are picked up by
    is_set() at the top of each cycle and by wait(), which returns early
    as soon as one is pending.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.old_mask = None
        self.received = None
        self._stopped = False

    def __enter__(self):
        """Block the stop signals for the calling thread"""
        self.old_mask = signal.pthread_sigmask(signal.SIG_BLOCK, self.SIGNALS)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore the previous signal mask"""
        if self.old_mask is not None:
            # A repeated stop signal still pending would kill us once unblocked
            while signal.sigtimedwait(self.SIGNALS, 0) is not None:
                pass
            signal.pthread_sigmask(signal.SIG_SETMASK, self.old_mask)
            self.old_mask = None

    def is_set(self) -> bool:
        """True once stopped, including by a signal that arrived mid-cycle"""
        if not self._stopped and self.old_mask is not None:
            self._take_signal(0)
        return self._stopped

    def set(self):
        self._stopped = True

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if a stop was requested"""
        if self._stopped:
            return True
        return self._take_signal(timeout)

    def _take_signal(self, timeout: float) -> bool:
        info = signal.sigtimedwait(self.SIGNALS, timeout)
        if info is not None:
            self.received = signal.Signals(info.si_signo)
            logger.info("Received %s", self.received.name)
            self._stopped = True
        return self._stopped


class PwmEnableControl:
    """Fan mode register of one hwmon PWM channel"""

    def __init__(self, enable_path, verify: bool = True):
        self.enable_path = Path(enable_path)
        self.verify = verify

    def read_file(self) -> Optional[str]:
        """Read the register and return its contents"""
        try:
            return self.enable_path.read_text().strip()
        except (OSError, UnicodeDecodeError):
            return None

    def read_mode(self) -> Optional[FanMode]:
        value = self.read_file()
        try:
            return FanMode(int(value))
        except (TypeError, ValueError):
            return None

    def set_mode(self, mode: FanMode):
        """Write a mode, raising ActuationFailed unless the register took it"""
        if mode not in SUPPORTED_MODES:
            raise ActuationFailed(f"Mode {int(mode)} is not supported by this hardware")

        value = str(int(mode))
        try:
            self.enable_path.write_text(value)
        except OSError as e:
            raise ActuationFailed(f"Error writing {value} to {self.enable_path}: {e}") from e

        # The driver drops unsupported values without returning an error
        if self.verify:
            actual = self.read_file()
            if actual != value:
                raise ActuationFailed(
                    f"{self.enable_path} reads {actual!r} after writing {value}")

    def __repr__(self):
        return f"PwmEnableControl({str(self.enable_path)!r})"


class ControlState:
    """Mutable state of one FanControlLoop"""

    def __init__(self):
        self.current_mode: Optional[FanMode] = None  # Last mode known to be written
        self.last_temperature: Optional[int] = None
        self.last_logged_temperature: Optional[int] = None
        self.last_trend_log: Optional[float] = None


class FanControlLoop:
    """Two-threshold hysteresis control of an OFF/AUTO fan

    The fan is switched off when the temperature drops below temp_fan_off
    and handed back to automatic control once it reaches temp_fan_on.
    Samples between the two thresholds never change the mode.

    `sensor` needs a read() returning whole degrees or raising
    SensorUnavailable, `control` a set_mode() raising ActuationFailed.
    `stop_event` is anything with is_set() and wait(timeout), normally a
    SignalWaiter or a threading.Event.
    """

    def __init__(self, sensor, control, temp_fan_off: int = 55, temp_fan_on: int = 58,
                 interval: float = 5.0, stop_event=None,
                 clock: Callable[[], float] = time.monotonic):
        if temp_fan_off >= temp_fan_on:
            raise ConfigurationInvalid(
                f"temp_fan_off ({temp_fan_off}) must be below temp_fan_on ({temp_fan_on})")
        if interval <= 0:
            raise ConfigurationInvalid(f"interval must be positive, got {interval}")

        self.sensor = sensor
        self.control = control
        self.temp_fan_off = temp_fan_off
        self.temp_fan_on = temp_fan_on
        self.interval = interval
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.clock = clock
        self.state = ControlState()

    def target_mode(self, temp: int) -> FanMode:
        """Mode for this sample, given the mode the fan is in now"""
        if self.state.current_mode == FanMode.OFF:
            # Fan is off, turn it back on only once temp reaches temp_fan_on
            return FanMode.AUTO if temp >= self.temp_fan_on else FanMode.OFF
        # Auto, or unknown after a failed write
        return FanMode.OFF if temp < self.temp_fan_off else FanMode.AUTO

    def apply_mode(self, mode: FanMode, reason: str, force: bool = False) -> bool:
        """Write mode unless it is already active. Returns True if a write succeeded"""
        if not force and self.state.current_mode == mode:
            return False

        try:
            self.control.set_mode(mode)
        except ActuationFailed as e:
            # current_mode stays as it was, so the next cycle tries again
            logger.error("ERROR: Failed to set fan mode %d: %s", int(mode), e)
            return False

        self.state.current_mode = mode
        logger.info("Fan mode set to: %s (%s) (mode %d)", mode.name, reason, int(mode))
        return True

    def poll_once(self) -> Optional[int]:
        """One read/decide/act/log cycle. Returns the sample, or None if skipped"""
        try:
            temp = self.sensor.read()
        except SensorUnavailable as e:
            logger.warning("Could not read temperature: %s", e)
            return None

        mode = self.target_mode(temp)
        if mode != self.state.current_mode:
            if mode == FanMode.OFF:
                reason = f"temp: {temp}°C < {self.temp_fan_off}°C"
            elif temp >= self.temp_fan_on:
                reason = f"temp: {temp}°C >= {self.temp_fan_on}°C"
            else:
                reason = f"temp: {temp}°C"
            self.apply_mode(mode, reason)
        else:
            logger.debug("Temperature %d°C, keeping %s", temp, mode.name)

        self._log_trend(temp)
        self.state.last_temperature = temp
        return temp

    def _log_trend(self, temp: int):
        """Periodic temperature line, plus one whenever the temperature jumps"""
        state = self.state
        now = self.clock()
        due = state.last_trend_log is None or now - state.last_trend_log >= TREND_LOG_INTERVAL
        moved = (state.last_logged_temperature is not None
                 and abs(temp - state.last_logged_temperature) > TREND_LOG_DELTA)
        if not (due or moved):
            return

        mode = state.current_mode.name if state.current_mode is not None else "unknown"
        logger.info("Temperature: %d°C, Fan mode: %s", temp, mode)
        state.last_trend_log = now
        state.last_logged_temperature = temp

    def start(self):
        """Hand the fan to automatic control whatever mode it was left in"""
        logger.info("Starting fan control (PID: %d)", os.getpid())
        logger.info("Temperature thresholds: Fan OFF<%d°C, Fan ON>=%d°C",
                    self.temp_fan_off, self.temp_fan_on)
        self.apply_mode(FanMode.AUTO, "startup", force=True)

    def shutdown(self):
        """Restore automatic control, even if the fan already is in auto"""
        logger.info("Fan control stopping - restoring automatic control")
        self.apply_mode(FanMode.AUTO, "exit", force=True)

    def stop(self):
        self.stop_event.set()

    def run(self, max_iterations: Optional[int] = None):
        """Poll until stopped. AUTO is written on every way out of here"""
        iteration_count = 0
        try:
            self.start()
            while not self.stop_event.is_set():
                self.poll_once()
                iteration_count += 1

                # Check if we've reached max iterations
                if max_iterations and iteration_count >= max_iterations:
                    break

                if self.stop_event.wait(self.interval):
                    break
        finally:
            self.shutdown()


def setup_logging(log_file: Optional[str] = None, verbose: bool = False):
    """Send records to stdout (journald) and, if possible, the log file"""
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, mode='a')
        except OSError as e:
            logger.warning("Cannot open log file %s: %s - logging to console only", log_file, e)
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


DEFAULT_CONFIG = {
    'thermal_zone': '/sys/class/thermal/thermal_zone0/temp',
    'pwm_enable': '/sys/devices/platform/asus-nb-wmi/hwmon/hwmon6/pwm1_enable',
    'log_file': '/var/log/fan-control.log',
    'temp_fan_off': 55,
    'temp_fan_on': 58,
    'interval': 5.0,
    'verify_writes': True,
}


def get_config_path():
    """Get the path to the config file, returns None if directory can't be created"""
    try:
        config_dir = Path.home() / '.config' / 'fan_control'
        config_dir.mkdir(parents=True, exist_ok=True)
        return config_dir / 'fan_control.conf'
    except (OSError, RuntimeError):
        # Can't create config directory, will use defaults only
        return None


def render_config(config: Dict) -> str:
    """Config file content for the given settings"""
    verify = 'true' if config.get('verify_writes', True) else 'false'
    return f"""# Fan Control Configuration
# Lines starting with # are comments

# Thermal zone read for the CPU temperature (millidegrees Celsius)
thermal_zone = {config.get('thermal_zone', DEFAULT_CONFIG['thermal_zone'])}

# Fan mode register (0 = off, 2 = auto)
pwm_enable = {config.get('pwm_enable', DEFAULT_CONFIG['pwm_enable'])}

# Where to append log lines
log_file = {config.get('log_file', DEFAULT_CONFIG['log_file'])}

# Temperature thresholds (Celsius)
# Fan is switched off below temp_fan_off and back to auto at temp_fan_on.
# temp_fan_off must be lower than temp_fan_on
temp_fan_off = {config.get('temp_fan_off', DEFAULT_CONFIG['temp_fan_off'])}
temp_fan_on = {config.get('temp_fan_on', DEFAULT_CONFIG['temp_fan_on'])}

# Update interval in seconds
interval = {config.get('interval', DEFAULT_CONFIG['interval'])}

# Read pwm_enable back after each write to confirm the driver accepted it
verify_writes = {verify}
"""


def parse_value(key: str, value: str):
    """Convert a config file value to the type of its default"""
    try:
        if key in ('temp_fan_off', 'temp_fan_on'):
            return int(value)
        if key == 'interval':
            return float(value)
        if key == 'verify_writes':
            lowered = value.lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(value)
    except ValueError as e:
        raise ConfigurationInvalid(f"Invalid value for {key}: {value!r}") from e
    return value


def load_config(config_path: Optional[Path] = None) -> Dict:
    """Load configuration from file, falls back to defaults if config unavailable

    An explicitly given path must exist. Malformed values raise
    ConfigurationInvalid.
    """
    config = dict(DEFAULT_CONFIG)

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationInvalid(f"Config file not found: {config_path}")
    else:
        config_path = get_config_path()

        # If we can't get a config path, just use defaults
        if config_path is None:
            return config

        if not config_path.exists():
            try:
                config_path.write_text(render_config(config))
                logger.info("Created default config file at %s", config_path)
            except OSError as e:
                logger.debug("Could not create %s: %s", config_path, e)
            return config

    try:
        lines = config_path.read_text().splitlines()
    except OSError as e:
        logger.warning("Could not read config file %s: %s - using defaults", config_path, e)
        return config

    for line in lines:
        line = line.strip()
        # Skip comments and empty lines
        if not line or line.startswith('#'):
            continue

        # Parse key = value
        if '=' in line:
            key, value = line.split('=', 1)
            key = key.strip()
            if key in DEFAULT_CONFIG:
                config[key] = parse_value(key, value.strip())

    return config


def save_config(config: Dict, config_path: Optional[Path] = None) -> bool:
    """Save configuration to file"""
    if config_path is None:
        config_path = get_config_path()

    if config_path is None:
        print("Error: Cannot save config file (config directory not accessible)")
        return False

    try:
        Path(config_path).write_text(render_config(config))
        print(f"Configuration saved to {config_path}")
        return True
    except OSError as e:
        print(f"Error: Could not save config file: {e}")
        return False


def validate_config(config: Dict):
    """Refuse settings that cannot prevent oscillation or find their files"""
    if config['temp_fan_off'] >= config['temp_fan_on']:
        raise ConfigurationInvalid(
            f"temp_fan_off ({config['temp_fan_off']}) must be below "
            f"temp_fan_on ({config['temp_fan_on']})")
    if config['interval'] <= 0:
        raise ConfigurationInvalid(f"interval must be positive, got {config['interval']}")
    if not Path(config['thermal_zone']).exists():
        raise ConfigurationInvalid(f"Thermal zone not found at {config['thermal_zone']}")
    if not Path(config['pwm_enable']).exists():
        raise ConfigurationInvalid(f"PWM control not found at {config['pwm_enable']}")


def show_status(config: Dict):
    """Print the current temperature and fan mode without changing anything"""
    sensor = ThermalSensor(config['thermal_zone'])
    control = PwmEnableControl(config['pwm_enable'])

    try:
        temp_display = f"{sensor.read()}°C"
    except SensorUnavailable as e:
        temp_display = f"unavailable ({e})"

    mode = control.read_mode()
    mode_display = f"{mode.name} (mode {int(mode)})" if mode is not None else "unknown"

    print(f"Temperature:  {temp_display}  [{sensor.path}]")
    print(f"Fan mode:     {mode_display}  [{control.enable_path}]")
    print(f"Thresholds:   Fan OFF<{config['temp_fan_off']}°C, Fan ON>={config['temp_fan_on']}°C")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Fan Control Daemon')
    parser.add_argument('command', nargs='?', choices=['set', 'status'], default=None,
                        help='"set" to save current flags to config, "status" to show current state')
    parser.add_argument('--config', type=Path, default=None,
                        help='Path to config file (default: ~/.config/fan_control/fan_control.conf)')
    parser.add_argument('--thermal-zone', type=str, default=None,
                        help='Path to thermal zone temp file')
    parser.add_argument('--pwm-enable', type=str, default=None,
                        help='Path to pwmN_enable control file')
    parser.add_argument('--log-file', type=str, default=None,
                        help='File to append log lines to')
    parser.add_argument('--temp-fan-off', type=int, default=None,
                        help='Switch the fan off below this temperature (°C)')
    parser.add_argument('--temp-fan-on', type=int, default=None,
                        help='Return the fan to auto at or above this temperature (°C)')
    parser.add_argument('-i', '--interval', type=float, default=None,
                        help='Update interval in seconds')
    parser.add_argument('-n', '--iterations', type=int, default=None,
                        help='Number of iterations before exiting (for testing)')
    parser.add_argument('--no-verify', action='store_true',
                        help='Do not read pwm_enable back after writing')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log every cycle')

    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
    except ConfigurationInvalid as e:
        logger.error("ERROR: %s", e)
        return 1

    # Merge command line args with config (command line takes precedence)
    overrides = {
        'thermal_zone': args.thermal_zone,
        'pwm_enable': args.pwm_enable,
        'log_file': args.log_file,
        'temp_fan_off': args.temp_fan_off,
        'temp_fan_on': args.temp_fan_on,
        'interval': args.interval,
    }
    settings = dict(config)
    settings.update({key: value for key, value in overrides.items() if value is not None})
    if args.no_verify:
        settings['verify_writes'] = False

    # If "set" command is used, save config and exit
    if args.command == 'set':
        return 0 if save_config(settings, args.config) else 1

    if args.command == 'status':
        show_status(settings)
        return 0

    try:
        validate_config(settings)
    except ConfigurationInvalid as e:
        logger.error("ERROR: %s", e)
        return 1

    setup_logging(settings['log_file'], verbose=args.verbose)

    if not os.access(settings['pwm_enable'], os.W_OK):
        logger.warning("Warning: %s is not writable, fan control requires root privileges",
                       settings['pwm_enable'])

    with SignalWaiter() as stop:
        try:
            loop = FanControlLoop(
                ThermalSensor(settings['thermal_zone']),
                PwmEnableControl(settings['pwm_enable'], verify=settings['verify_writes']),
                temp_fan_off=settings['temp_fan_off'],
                temp_fan_on=settings['temp_fan_on'],
                interval=settings['interval'],
                stop_event=stop,
            )
        except ConfigurationInvalid as e:
            logger.error("ERROR: %s", e)
            return 1
        loop.run(max_iterations=args.iterations)

    return 0


if __name__ == "__main__":
    sys.exit(main())
