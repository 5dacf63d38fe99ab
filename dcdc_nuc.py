#!/usr/bin/env python3
"""
Mini-Box DCDC-NUC Power Supply — Python status reader

Polls the DCDC-NUC controller over its USB HID interrupt endpoints and decodes
the two status reports (IO_DATA and IO_DATA2) into one immutable snapshot.

Requires: pyusb (`pip install pyusb`) and a libusb backend.
"""

import bisect
import enum
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Protocol, Sequence

import usb.core
import usb.util

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants — USB settings
# ---------------------------------------------------------------------------
NUC_VID = 0x04D8
NUC_PID = 0xD006
NUC_INTERFACE = 0
USB_TIMEOUT = 100  # ms
MAX_TRANSFER_SIZE = 32
REPORT_SIZE = 32

# Report IDs
OUT_REPORT_IO_DATA = 0x81
IN_REPORT_IO_DATA = 0x82
OUT_REPORT_IO_DATA2 = 0x83
IN_REPORT_IO_DATA2 = 0x84

# Configuration memory (EEPROM) reports. Reserved, never decoded as status.
IN_REPORT_EXT_EE_DATA = 0x31
OUT_REPORT_EXT_EE_READ = 0xA1
OUT_REPORT_EXT_EE_WRITE = 0xA2
EEPROM_REPORT_IDS = frozenset(
    (IN_REPORT_EXT_EE_DATA, OUT_REPORT_EXT_EE_READ, OUT_REPORT_EXT_EE_WRITE)
)

# Scale divisors, raw count -> physical unit
VOLTAGE_DIVISOR = 10  # 0.1 V
CURRENT_DIVISOR = 1000  # 1 mA
POWER_DIVISOR = 100  # 0.01 W

# ---------------------------------------------------------------------------
# Thermistor curve
# ---------------------------------------------------------------------------
# ADC thresholds, one per 5 C step starting at -40 C.
THERMAL_CURVE = (
    0x00B, 0x00E, 0x013, 0x019, 0x01F, 0x028, 0x032, 0x03E, 0x04C, 0x05D,
    0x06F, 0x085, 0x09D, 0x0B8, 0x0D6, 0x0F6, 0x118, 0x13C, 0x162, 0x188,
    0x1B0, 0x1D6, 0x1FC, 0x222, 0x246, 0x268, 0x289, 0x2A8, 0x2C5, 0x2E0,
    0x2F9, 0x310, 0x325, 0x339,
)
THERMAL_CURVE_MIN_C = -40.0
THERMAL_CURVE_STEP_C = 5.0


def curve_temperature(index: int) -> float:
    """Calibrated temperature of one THERMAL_CURVE entry, in degrees Celsius."""
    if not 0 <= index < len(THERMAL_CURVE):
        raise IndexError(f"thermal curve index {index} out of range")
    return THERMAL_CURVE_MIN_C + THERMAL_CURVE_STEP_C * index


def therm_to_temp(raw: int) -> float:
    """Convert a raw thermistor ADC reading to degrees Celsius.

    Readings outside the table clamp to its first/last calibrated value;
    readings between two entries are linearly interpolated.
    """
    if raw < 0:
        raise ValueError(f"thermistor reading {raw} is negative")

    i = bisect.bisect_left(THERMAL_CURVE, raw)
    if i == 0:
        return curve_temperature(0)
    if i == len(THERMAL_CURVE):
        return curve_temperature(len(THERMAL_CURVE) - 1)
    if THERMAL_CURVE[i] == raw:
        return curve_temperature(i)

    lo, hi = THERMAL_CURVE[i - 1], THERMAL_CURVE[i]
    fraction = (raw - lo) / (hi - lo)
    return curve_temperature(i - 1) + THERMAL_CURVE_STEP_C * fraction


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DcdcNucError(IOError):
    """Base class for every DCDC-NUC failure."""


class DeviceConnectionError(DcdcNucError):
    """Device missing or ambiguous, interface claim failed, or not connected."""


class TransportError(DcdcNucError):
    """A transfer timed out, failed, or came back short. Safe to retry."""


class DecodeError(DcdcNucError):
    """A report did not carry the expected report ID or was truncated."""


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------
class NucState(enum.IntEnum):
    INIT = 0
    LOW_POWER = 1
    OFF = 2
    WAIT_IGNITION_TO_OUTPUT_ON = 3
    OUTPUT_ON = 4
    OUTPUT_ON_TO_MOBO_PULSE = 5
    MOBO_PULSE_ON = 6
    ON = 7
    IGNITION_OFF_TO_MOBO_OFF = 8
    HARD_OFF_DELAY = 9


@dataclass(frozen=True)
class StatusSnapshot:
    """One fully decoded status read of the power supply.

    Flags whose downstream meaning is undocumented are still carried under
    their own names so nothing the firmware reports is dropped.
    """

    # IO_DATA byte 1
    protection_ok: bool
    not_protection_fault: bool
    not_open_led: bool
    not_short_led: bool
    cfg1: bool
    cfg2: bool
    cfg3: bool
    control_frequency: bool
    # IO_DATA byte 2
    not_power_switch: bool
    mode: bool  # False: dumb mode, True: automotive mode
    usb_sense: bool
    input_voltage_good: bool
    ignition_voltage_good: bool
    mobo_alive_pout: bool
    ignition_raised: bool
    ignition_fallen: bool
    # IO_DATA byte 3
    output_enabled: bool
    thump_output_enabled: bool

    input_voltage: float
    input_current: float
    output_voltage: float
    output_current: float
    output_power: float
    temperature: float  # only meaningful while the output is enabled
    ignition_voltage: float
    thump_voltage: float

    timer_init: int
    timer_ignition_to_output_on: int
    timer_thump_output_on_off: int
    timer_output_on_to_mobo_on_pulse: int
    timer_mobo_pulse_width: int
    timer_ignition_cancel: int
    timer_ignition_off_to_mobo_off_pulse: int
    timer_hard_off: int
    timer_input_voltage_count: int
    timer_ignition_voltage_count: int

    state_machine_state: int
    mode2: int
    firmware_version_major: int
    firmware_version_minor: int

    @property
    def state(self) -> Optional[NucState]:
        try:
            return NucState(self.state_machine_state)
        except ValueError:
            return None

    @property
    def state_name(self) -> str:
        state = self.state
        if state is None:
            return f"Unknown({self.state_machine_state})"
        return state.name

    @property
    def mode_name(self) -> str:
        return "automotive" if self.mode else "dumb"

    @property
    def firmware_version(self) -> str:
        return f"{self.firmware_version_major}.{self.firmware_version_minor}"

    def as_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Report layout
# ---------------------------------------------------------------------------
# IO_DATA flag bytes, LSB first.
FLAGS_BYTE1 = (
    "protection_ok", "not_protection_fault", "not_open_led", "not_short_led",
    "cfg1", "cfg2", "cfg3", "control_frequency",
)
FLAGS_BYTE2 = (
    "not_power_switch", "mode", "usb_sense", "input_voltage_good",
    "ignition_voltage_good", "mobo_alive_pout", "ignition_raised",
    "ignition_fallen",
)
FLAGS_BYTE3 = ("output_enabled", "thump_output_enabled")

# IO_DATA measurements: (field, offset of the high byte, divisor)
MEASUREMENTS = (
    ("input_voltage", 4, VOLTAGE_DIVISOR),
    ("input_current", 6, CURRENT_DIVISOR),
    ("output_voltage", 8, VOLTAGE_DIVISOR),
    ("output_current", 10, CURRENT_DIVISOR),
    ("output_power", 12, POWER_DIVISOR),
    ("ignition_voltage", 16, VOLTAGE_DIVISOR),
    ("thump_voltage", 18, VOLTAGE_DIVISOR),
)
OFFSET_THERMISTOR = 14
OFFSET_STATE = 20
OFFSET_MODE2 = 21
OFFSET_FW_MAJOR = 22
OFFSET_FW_MINOR = 23

# IO_DATA2 timers, consecutive big-endian pairs from byte 1.
TIMERS = (
    "timer_init",
    "timer_ignition_to_output_on",
    "timer_thump_output_on_off",
    "timer_output_on_to_mobo_on_pulse",
    "timer_mobo_pulse_width",
    "timer_ignition_cancel",
    "timer_ignition_off_to_mobo_off_pulse",
    "timer_hard_off",
    "timer_input_voltage_count",
    "timer_ignition_voltage_count",
)


# ---------------------------------------------------------------------------
# Packet helpers
# ---------------------------------------------------------------------------
def build_command(report_id: int, payload: bytes = b"") -> bytes:
    """Build one fixed-size OUT report: report ID | payload | zero padding."""
    if len(payload) > REPORT_SIZE - 1:
        raise ValueError(
            f"payload of {len(payload)} bytes exceeds {REPORT_SIZE - 1}"
        )
    buff = bytes([report_id & 0xFF]) + payload
    return buff + bytes(REPORT_SIZE - len(buff))


def chars_to_uint(high: int, low: int) -> int:
    """Combine a big-endian byte pair into an unsigned 16-bit value."""
    return high * 256 + low


def scaled(data: bytes, offset: int, divisor: int) -> float:
    return chars_to_uint(data[offset], data[offset + 1]) / divisor


def unpack_flags(value: int, names: Sequence[str]) -> dict:
    """Map bit i of value to names[i]."""
    return {name: bool((value >> bit) & 1) for bit, name in enumerate(names)}


def _check_report(data: bytes, expected_id: int, label: str):
    if len(data) < REPORT_SIZE:
        raise DecodeError(
            f"{label} report truncated: {len(data)} of {REPORT_SIZE} bytes"
        )
    if data[0] == expected_id:
        return
    if data[0] in EEPROM_REPORT_IDS:
        raise DecodeError(
            f"{label} slot holds configuration-memory report 0x{data[0]:02X}"
        )
    raise DecodeError(
        f"{label} report ID 0x{data[0]:02X}, expected 0x{expected_id:02X}"
    )


def decode(report1: bytes, report2: bytes) -> StatusSnapshot:
    """Assemble a StatusSnapshot from an IO_DATA and an IO_DATA2 report.

    Raises DecodeError if either buffer is short or carries the wrong ID.
    """
    _check_report(report1, IN_REPORT_IO_DATA, "IO_DATA")
    _check_report(report2, IN_REPORT_IO_DATA2, "IO_DATA2")

    fields = {}
    fields.update(unpack_flags(report1[1], FLAGS_BYTE1))
    fields.update(unpack_flags(report1[2], FLAGS_BYTE2))
    fields.update(unpack_flags(report1[3], FLAGS_BYTE3))

    for name, offset, divisor in MEASUREMENTS:
        fields[name] = scaled(report1, offset, divisor)
    fields["temperature"] = therm_to_temp(
        chars_to_uint(report1[OFFSET_THERMISTOR], report1[OFFSET_THERMISTOR + 1])
    )

    fields["state_machine_state"] = report1[OFFSET_STATE]
    fields["mode2"] = report1[OFFSET_MODE2]
    fields["firmware_version_major"] = report1[OFFSET_FW_MAJOR]
    fields["firmware_version_minor"] = report1[OFFSET_FW_MINOR]

    for i, name in enumerate(TIMERS):
        fields[name] = chars_to_uint(report2[1 + 2 * i], report2[2 + 2 * i])

    return StatusSnapshot(**fields)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class Transport(Protocol):
    """Blocking request/response link to one device."""

    def open(self) -> None: ...

    def send(self, buff: bytes) -> int: ...

    def recv(self, size: int) -> bytes: ...

    def close(self) -> None: ...


class UsbTransport:
    """pyusb session on the DCDC-NUC's HID interrupt endpoints.

    The vendor/product ids are plain constructor data so tests and other
    board revisions can point it elsewhere.
    """

    def __init__(self, vendor_id: int = NUC_VID, product_id: int = NUC_PID,
                 interface: int = NUC_INTERFACE, timeout: int = USB_TIMEOUT):
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.interface = interface
        self.timeout = timeout
        self._dev = None
        self._ep_in = None
        self._ep_out = None
        self._claimed = False

    @property
    def is_open(self) -> bool:
        return self._dev is not None

    def open(self):
        """Find the single matching device and claim its interface."""
        ident = f"{self.vendor_id:04x}:{self.product_id:04x}"
        try:
            devices = list(usb.core.find(
                find_all=True, idVendor=self.vendor_id,
                idProduct=self.product_id,
            ))
        except (usb.core.NoBackendError, usb.core.USBError) as e:
            raise DeviceConnectionError(
                f"Cannot enumerate USB devices for {ident}: {e}"
            ) from e
        if not devices:
            raise DeviceConnectionError(f"No DCDC-NUC found ({ident})")
        if len(devices) > 1:
            raise DeviceConnectionError(
                f"{len(devices)} devices match {ident}, refusing to pick one"
            )

        self._dev = devices[0]
        try:
            self._setup()
        except (usb.core.USBError, LookupError, ValueError) as e:
            # LookupError: interface missing from the active configuration
            self.close()
            raise DeviceConnectionError(f"Cannot claim {ident}: {e}") from e
        log.info("Opened DCDC-NUC %s interface %d", ident, self.interface)

    def _setup(self):
        dev = self._dev
        try:
            if dev.is_kernel_driver_active(self.interface):
                log.debug("Detaching kernel driver from interface %d",
                          self.interface)
                dev.detach_kernel_driver(self.interface)
        except NotImplementedError:
            # backend without kernel driver control (Windows, macOS)
            pass
        dev.set_configuration()
        usb.util.claim_interface(dev, self.interface)
        self._claimed = True

        intf = dev.get_active_configuration()[(self.interface, 0)]
        self._ep_out = usb.util.find_descriptor(
            intf,
            custom_match=lambda e: usb.util.endpoint_direction(
                e.bEndpointAddress) == usb.util.ENDPOINT_OUT,
        )
        self._ep_in = usb.util.find_descriptor(
            intf,
            custom_match=lambda e: usb.util.endpoint_direction(
                e.bEndpointAddress) == usb.util.ENDPOINT_IN,
        )
        if self._ep_in is None or self._ep_out is None:
            raise usb.core.USBError(
                f"interface {self.interface} lacks an IN/OUT endpoint pair"
            )

    def send(self, buff: bytes) -> int:
        """Write one OUT report, return the number of bytes sent."""
        if len(buff) > MAX_TRANSFER_SIZE:
            raise ValueError(
                f"{len(buff)} bytes exceeds transfer size {MAX_TRANSFER_SIZE}"
            )
        if self._ep_out is None:
            raise TransportError("Transport is not open")
        try:
            sent = self._ep_out.write(buff, self.timeout)
        except usb.core.USBError as e:
            raise TransportError(f"USB write failed: {e}") from e
        if sent <= 0 or sent < len(buff):
            raise TransportError(f"USB write sent {sent} of {len(buff)} bytes")
        return sent

    def recv(self, size: int) -> bytes:
        """Read up to size bytes (capped at MAX_TRANSFER_SIZE)."""
        if self._ep_in is None:
            raise TransportError("Transport is not open")
        size = min(size, MAX_TRANSFER_SIZE)
        try:
            data = self._ep_in.read(size, self.timeout)
        except usb.core.USBError as e:
            raise TransportError(f"USB read failed: {e}") from e
        return bytes(data)

    def close(self):
        """Release the interface and the device handle. Safe to repeat."""
        dev = self._dev
        self._dev = None
        self._ep_in = None
        self._ep_out = None
        if dev is None:
            return
        try:
            if self._claimed:
                usb.util.release_interface(dev, self.interface)
            usb.util.dispose_resources(dev)
        except usb.core.USBError as e:
            log.warning("Releasing USB device failed: %s", e)
        finally:
            self._claimed = False
        log.info("Closed DCDC-NUC %04x:%04x", self.vendor_id, self.product_id)


# ---------------------------------------------------------------------------
# DcdcNuc class
# ---------------------------------------------------------------------------
class DcdcNuc:
    """Status reader for the Mini-Box DCDC-NUC power supply.

    Usage::

        with DcdcNuc() as nuc:
            status = nuc.get_status()
            print(status.input_voltage, status.state_name)
    """

    def __init__(self, transport: Optional[Transport] = None,
                 vendor_id: int = NUC_VID, product_id: int = NUC_PID):
        if transport is None:
            transport = UsbTransport(vendor_id, product_id)
        self._transport = transport
        self._connected = False
        self._last_status: Optional[StatusSnapshot] = None

    # -- Properties ----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_status(self) -> Optional[StatusSnapshot]:
        """Most recent successfully decoded snapshot, if any."""
        return self._last_status

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the transport. DeviceConnectionError is not retried here."""
        if self._connected:
            return
        self._transport.open()
        self._connected = True

    def disconnect(self):
        self._connected = False
        self._transport.close()

    # -- Low-level I/O -------------------------------------------------------

    def _exchange(self, out_report: int) -> bytes:
        """Send one request report and read the matching response."""
        self._transport.send(build_command(out_report))
        data = self._transport.recv(REPORT_SIZE)
        if len(data) < REPORT_SIZE:
            raise TransportError(
                f"Short read for 0x{out_report:02X}: "
                f"{len(data)} of {REPORT_SIZE} bytes"
            )
        log.debug("0x%02X -> %s", out_report, data.hex())
        return data

    # -- Status reading ------------------------------------------------------

    def get_status(self) -> StatusSnapshot:
        """Read both status reports and return the decoded snapshot."""
        if not self._connected:
            raise DeviceConnectionError("Not connected")
        report1 = self._exchange(OUT_REPORT_IO_DATA)
        report2 = self._exchange(OUT_REPORT_IO_DATA2)
        status = decode(report1, report2)
        self._last_status = status
        return status

    def read_temperature(self) -> float:
        """Read the heatsink temperature in degrees Celsius."""
        return self.get_status().temperature

    def read_input_voltage(self) -> float:
        return self.get_status().input_voltage

    def read_output_voltage(self) -> float:
        return self.get_status().output_voltage

    def read_output_power(self) -> float:
        return self.get_status().output_power

    # -- Polling -------------------------------------------------------------

    def poll(
        self,
        callback: Callable,
        interval: float = 1.0,
        count: Optional[int] = None,
    ) -> int:
        """Read the status every interval seconds and report it.

        The callback receives (snapshot, error). A TransportError is treated
        as transient: it is passed as error together with the last good
        snapshot (None before the first success), and the next tick retries.
        DecodeError and DeviceConnectionError propagate. Return False from
        the callback to stop.

        Args:
            callback: Function called once per tick with (snapshot, error).
            interval: Seconds between ticks.
            count: Number of ticks to run, or None to run until stopped.

        Returns:
            Number of ticks that produced a fresh snapshot.
        """
        if interval < 0:
            raise ValueError("interval must not be negative")

        ok = 0
        tick = 0
        while count is None or tick < count:
            if tick:
                time.sleep(interval)
            tick += 1
            try:
                status = self.get_status()
            except TransportError as e:
                log.warning("Status read failed, retrying next tick: %s", e)
                ret = callback(self._last_status, e)
            else:
                ok += 1
                ret = callback(status, None)
            if ret is False:
                break
        return ok


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _int_auto(text: str) -> int:
    return int(text, 0)


def setup_logging(debug: bool = False, quiet: bool = False):
    """Configure the root logger from the --debug/--quiet flags."""
    level = logging.DEBUG if debug else logging.INFO
    if quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _cli(argv=None):
    import argparse
    import json as _json
    import os
    import sys

    parser = argparse.ArgumentParser(
        prog="dcdc-nuc",
        description="Mini-Box DCDC-NUC status reader",
    )
    parser.add_argument(
        "--vid", type=_int_auto,
        default=os.environ.get("DCDC_NUC_VID", f"{NUC_VID:#06x}"),
        help="USB vendor id (default: %(default)s)",
    )
    parser.add_argument(
        "--pid", type=_int_auto,
        default=os.environ.get("DCDC_NUC_PID", f"{NUC_PID:#06x}"),
        help="USB product id (default: %(default)s)",
    )
    parser.add_argument("--debug", action="store_true", help="debug logging")
    parser.add_argument("--quiet", action="store_true", help="warnings only")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="read full status (JSON)")
    sub.add_parser("info", help="show firmware version, mode and state")
    sub.add_parser("temperature", help="read temperature")
    sub.add_parser("voltage", help="read input and output voltage")

    p = sub.add_parser("watch", help="poll the status at a fixed interval")
    p.add_argument("-i", "--interval", type=float, default=1.0)
    p.add_argument("-n", "--count", type=int, default=None)

    args = parser.parse_args(argv)
    setup_logging(args.debug, args.quiet)

    nuc = DcdcNuc(vendor_id=args.vid, product_id=args.pid)
    try:
        nuc.connect()
        cmd = args.command

        if cmd == "status":
            status = nuc.get_status()
            data = status.as_dict()
            data["state_name"] = status.state_name
            data["mode_name"] = status.mode_name
            print(_json.dumps(data, indent=2))

        elif cmd == "info":
            status = nuc.get_status()
            print(f"Firmware: {status.firmware_version}")
            print(f"Mode:     {status.mode_name}")
            print(f"State:    {status.state_name}")

        elif cmd == "temperature":
            print(f"{nuc.read_temperature():.1f}")

        elif cmd == "voltage":
            status = nuc.get_status()
            print(f"Input:  {status.input_voltage:.2f} V")
            print(f"Output: {status.output_voltage:.2f} V")

        elif cmd == "watch":
            def _watch_cb(status, error):
                if error is not None:
                    print(f"  transient error: {error}", file=sys.stderr)
                    return
                print(
                    f"  {status.state_name:<26} in {status.input_voltage:6.2f} V"
                    f"  out {status.output_voltage:6.2f} V"
                    f" {status.output_current:6.3f} A"
                    f" {status.output_power:7.2f} W"
                    f"  {status.temperature:5.1f} C"
                )
            ok = nuc.poll(_watch_cb, interval=args.interval, count=args.count)
            print(f"\n{ok} reads recorded")

    except KeyboardInterrupt:
        pass
    except (ValueError, DcdcNucError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        nuc.disconnect()


if __name__ == "__main__":
    _cli()
