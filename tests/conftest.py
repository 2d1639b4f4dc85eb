"""Shared fixtures: an in-memory Bus Pirate speaking the binary protocol."""

import pytest
import serial

from BinPyrate import BusPirate, I2C


class FakeBusPirate:
    """Stand-in for a serial-attached Bus Pirate.

    Implements the pyserial calls the library uses, records every
    write() and answers each byte the way the firmware does.
    """

    BANNER = (
        b"\r\nBus Pirate v3.b\r\n"
        b"Firmware v5.10 (r559)  Bootloader v4.4\r\n"
        b"DEVID:0x0447 REVID:0x3046 (24FJ64GA002 B8)\r\n"
        b"http://dangerousprototypes.com\r\n"
        b"HiZ>"
    )

    def __init__(self, sync_after=1, read_data=b""):
        self.timeout = None
        self.written = []          # one entry per write() call
        self.rx = bytearray()
        self.mode = "console"
        self.resets = 0
        self.sync_after = sync_after
        self.i2c_reply = b"I2C1"
        self.nak = set()           # I2C commands answered with 0x00
        self.fail_on = set()       # bytes whose write() raises
        self.read_data = bytearray(read_data)
        self.pending_write = 0
        self.input_resets = 0
        self.output_resets = 0
        self.closed = False

    # pyserial surface

    def reset_input_buffer(self):
        self.input_resets += 1
        self.rx.clear()

    def reset_output_buffer(self):
        self.output_resets += 1

    def flush(self):
        pass

    def close(self):
        self.closed = True

    def read(self, size=1):
        out = bytes(self.rx[:size])
        del self.rx[:size]
        return out

    def readline(self):
        idx = self.rx.find(b"\n")
        return self.read(idx + 1 if idx >= 0 else len(self.rx))

    def write(self, data):
        data = bytes(data)
        if self.fail_on.intersection(data):
            raise serial.SerialException("device reports readiness to read but returned no data")
        self.written.append(data)
        for b in data:
            self._handle(b)
        return len(data)

    # firmware

    def _handle(self, b):
        if self.pending_write:
            self.pending_write -= 1
            self.rx += b"\x00"     # slave ACK
            return
        if self.mode in ("console", "bbio"):
            self._handle_bbio(b)
        else:
            self._handle_i2c(b)

    def _handle_bbio(self, b):
        if b == 0x00:
            self.resets += 1
            if self.resets >= self.sync_after:
                self.mode = "bbio"
                self.rx += b"BBIO1"
        elif self.mode == "bbio" and b == 0x02:
            self.mode = "i2c"
            self.rx += self.i2c_reply
        elif self.mode == "bbio" and b == 0x0F:
            self.mode = "console"
            self.rx += b"\x01" + self.BANNER

    def _handle_i2c(self, b):
        ok = b"\x00" if b in self.nak else b"\x01"
        if b == 0x00:
            self.mode = "bbio"
            self.rx += b"BBIO1"
        elif b == 0x01:
            self.rx += b"I2C1"
        elif b == 0x04:
            self.rx.append(self.read_data.pop(0))
        elif b in (0x02, 0x03, 0x06, 0x07):
            self.rx += ok
        elif b & 0xF0 == 0x10:
            self.rx += ok
            if ok == b"\x01":
                self.pending_write = (b & 0x0F) + 1
        elif b & 0xF0 in (0x40, 0x50, 0x60):
            self.rx += ok


@pytest.fixture
def fake():
    return FakeBusPirate()


@pytest.fixture
def bp(fake):
    bp = BusPirate(fake, settle_delay=0)
    bp.connect()
    return bp


@pytest.fixture
def i2c(bp, fake):
    transport = bp.switch_mode(
        I2C.mode, (I2C.SPEED_400KHZ, I2C.PIN_POWER | I2C.PIN_PULLUPS, I2C.PULLUP_3V3)
    )
    fake.written.clear()
    return transport
