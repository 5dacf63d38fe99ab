"""Shared fixtures for DCDC-NUC tests."""

from unittest.mock import MagicMock

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dcdc_nuc import (
    DcdcNuc,
    IN_REPORT_IO_DATA,
    IN_REPORT_IO_DATA2,
    OUT_REPORT_IO_DATA,
    OUT_REPORT_IO_DATA2,
    REPORT_SIZE,
    TIMERS,
    TransportError,
)


def put_pair(buf: bytearray, offset: int, value: int):
    """Store a 16-bit value as a big-endian byte pair."""
    buf[offset] = value >> 8 & 0xFF
    buf[offset + 1] = value & 0xFF


def make_io_data(flags1=0, flags2=0, flags3=0, input_voltage=0,
                 input_current=0, output_voltage=0, output_current=0,
                 output_power=0, thermistor=0, ignition_voltage=0,
                 thump_voltage=0, state=0, mode2=0, fw_major=0, fw_minor=0,
                 report_id=IN_REPORT_IO_DATA) -> bytes:
    """Build an IO_DATA report from raw (unscaled) field values."""
    buf = bytearray(REPORT_SIZE)
    buf[0] = report_id
    buf[1] = flags1
    buf[2] = flags2
    buf[3] = flags3
    put_pair(buf, 4, input_voltage)
    put_pair(buf, 6, input_current)
    put_pair(buf, 8, output_voltage)
    put_pair(buf, 10, output_current)
    put_pair(buf, 12, output_power)
    put_pair(buf, 14, thermistor)
    put_pair(buf, 16, ignition_voltage)
    put_pair(buf, 18, thump_voltage)
    buf[20] = state
    buf[21] = mode2
    buf[22] = fw_major
    buf[23] = fw_minor
    return bytes(buf)


def make_io_data2(timers=None, report_id=IN_REPORT_IO_DATA2) -> bytes:
    """Build an IO_DATA2 report; timers is a sequence of ten raw counts."""
    timers = list(timers or [0] * len(TIMERS))
    buf = bytearray(REPORT_SIZE)
    buf[0] = report_id
    for i, value in enumerate(timers):
        put_pair(buf, 1 + 2 * i, value)
    return bytes(buf)


class FakeTransport:
    """In-memory transport answering each request with a queued report.

    responses maps an OUT report ID to a list of replies; a reply that is an
    exception instance is raised from recv() instead of returned.
    """

    def __init__(self, responses):
        self.responses = {k: list(v) for k, v in responses.items()}
        self.sent = []
        self.opened = 0
        self.closed = 0
        self._pending = None

    def open(self):
        self.opened += 1

    def send(self, buff):
        self.sent.append(bytes(buff))
        self._pending = buff[0]
        return len(buff)

    def recv(self, size):
        reply = self.responses[self._pending].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply[:size]

    def close(self):
        self.closed += 1


@pytest.fixture
def io_data():
    """IO_DATA report with known values.

    Values:
        protection_ok, not_protection_fault, cfg2 set (byte 1 = 0x23),
        mode=automotive, usb_sense, input_voltage_good (byte 2 = 0x0E),
        output_enabled (byte 3 = 0x01),
        input_voltage=30.0 V (0x012C), input_current=2.5 A (2500),
        output_voltage=19.0 V (190), output_current=3.25 A (3250),
        output_power=61.75 W (6175), thermistor=0x6F (10 C),
        ignition_voltage=12.6 V (126), thump_voltage=5.0 V (50),
        state=7 (ON), mode2=0x5A, firmware 1.4
    """
    return make_io_data(
        flags1=0x23, flags2=0x0E, flags3=0x01,
        input_voltage=0x012C, input_current=2500,
        output_voltage=190, output_current=3250, output_power=6175,
        thermistor=0x6F, ignition_voltage=126, thump_voltage=50,
        state=7, mode2=0x5A, fw_major=1, fw_minor=4,
    )


@pytest.fixture
def io_data2():
    """IO_DATA2 report with timers 1, 2, ... 9 and 0xFFFF last."""
    return make_io_data2([1, 2, 3, 4, 5, 6, 7, 8, 9, 0xFFFF])


@pytest.fixture
def fake_transport(io_data, io_data2):
    return FakeTransport({
        OUT_REPORT_IO_DATA: [io_data] * 4,
        OUT_REPORT_IO_DATA2: [io_data2] * 4,
    })


@pytest.fixture
def nuc(fake_transport):
    """A connected DcdcNuc on the fake transport."""
    dev = DcdcNuc(transport=fake_transport)
    dev.connect()
    return dev


@pytest.fixture
def timeout_then_ok_transport(io_data, io_data2):
    """First IO_DATA read times out, the next one succeeds."""
    return FakeTransport({
        OUT_REPORT_IO_DATA: [TransportError("USB read failed: timeout"), io_data],
        OUT_REPORT_IO_DATA2: [io_data2],
    })


@pytest.fixture
def mock_usb_device():
    """A pyusb device MagicMock with one IN and one OUT endpoint."""
    dev = MagicMock()
    dev.is_kernel_driver_active.return_value = False
    ep_out = MagicMock(bEndpointAddress=0x01)
    ep_out.write.side_effect = lambda data, timeout=None: len(data)
    ep_in = MagicMock(bEndpointAddress=0x81)
    dev.ep_out = ep_out
    dev.ep_in = ep_in
    return dev
