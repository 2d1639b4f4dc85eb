#!/usr/bin/env python3

# Bus Pirate binary mode I2C library
# By Michal Ludvig <mludvig@logix.net.nz> (c) 2015
# License GPLv3

# See DangerousPrototypes.com website for BusPirate protocol specs
# http://dangerousprototypes.com/docs/Bitbang
# http://dangerousprototypes.com/docs/I2C_(binary)

import abc
import enum
import logging
import re
import time

import serial

log = logging.getLogger(__name__)

DEFAULT_BAUDRATE        = 115200
DEFAULT_TIMEOUT         = 0.5   # Channel read timeout once connect() starts
DEFAULT_CONNECT_TRIES   = 30
DEFAULT_SETTLE_DELAY    = 0.01  # Pause between a write and reading its reply

ACK_OK = 0x01


def _hex(data):
    return " ".join("%02X" % b for b in data)


class BusPyrateError(Exception):
    def __str__(self):
        return "%s" % self.args

class BusPyrateIOError(BusPyrateError):
    pass

class NoDataError(BusPyrateError):
    pass

class ConnectTimeout(BusPyrateError):
    pass

class NotConnected(BusPyrateError):
    pass

class ModeSwitchFailed(BusPyrateError):
    pass

class UnsupportedMode(ModeSwitchFailed):
    pass

class InvalidArgument(BusPyrateError, ValueError):
    pass

class AckMismatch(BusPyrateError):
    def __init__(self, what, got, expected = ACK_OK):
        self.what = what
        self.got = got
        self.expected = expected
        BusPyrateError.__init__(self, "%s failed: 0x%02X (expected 0x%02X)" % (what, got, expected))


class BP_Mode(enum.IntEnum):
    """
    Binary modes. The value is the byte that enters the mode from BBIO.
    """
    bbio        = 0x00
    spi         = 0x01
    i2c         = 0x02
    uart        = 0x03
    onewire     = 0x04
    raw         = 0x05
    jtag        = 0x06

    @staticmethod
    def get_str(mode):
        """
        get_str(mode) - Return the exact reply announcing 'mode'
        """
        return _mode_str[BP_Mode(mode)]

    @staticmethod
    def get_cmd(mode):
        """
        get_cmd(mode) - Return binmode command to set the given 'mode'
        """
        return int(BP_Mode(mode))

_mode_str = {
    BP_Mode.bbio    : b"BBIO1",
    BP_Mode.spi     : b"SPI1",
    BP_Mode.i2c     : b"I2C1",
    BP_Mode.uart    : b"ART1",
    BP_Mode.onewire : b"1W01",
    BP_Mode.raw     : b"RAW1",
    BP_Mode.jtag    : b"JTAG1",
}


class BBIO(object):
    # Commands understood in the binary root (bitbang) mode
    CMD_RESET           = 0x00  # Responds "BBIO1"
    CMD_RESET_BP        = 0x0F  # Back to the user terminal, responds 0x01
    CMD_SELFTEST_SHORT  = 0x10
    CMD_SELFTEST_LONG   = 0x11
    CMD_PWM             = 0x12  # Followed by 5 setup bytes
    CMD_PWM_CLEAR       = 0x13
    CMD_VOLTAGE_PROBE   = 0x14  # Responds with 2 bytes
    CMD_VOLTAGE_CONT    = 0x15
    CMD_FREQUENCY       = 0x16  # Measured on AUX
    CMD_PINS_DIR        = 0x40  # OR with AUX|MOSI|CLK|MISO|CS, 1=input
    CMD_PINS_SET        = 0x80  # OR with POWER|PULLUP|AUX|MOSI|CLK|MISO|CS

    PIN_CS      = 0x01
    PIN_MISO    = 0x02
    PIN_CLK     = 0x04
    PIN_MOSI    = 0x08
    PIN_AUX     = 0x10
    PIN_PULLUP  = 0x20
    PIN_POWER   = 0x40


class BusTransport(abc.ABC):
    """
    Bus level access available once the Bus Pirate runs a bus mode.
    """
    mode = None

    @abc.abstractmethod
    def write(self, data):
        """Write 'data' (1-16 bytes) as one complete bus transaction."""

    @abc.abstractmethod
    def read(self, address, buf):
        """Fill 'buf' from the device at 'address', return the byte count."""


class BusPirate(object):
    """
    A Bus Pirate session over an already opened byte channel.

    'channel' is anything with the pyserial Serial surface used here:
    read(), readline(), write(), flush(), reset_input_buffer(),
    reset_output_buffer(), close() and a writable 'timeout'.

    Not thread safe, callers sharing a session must serialise access.
    """
    bp_version      = None
    bp_firmware     = None
    bp_bootloader   = None

    def __init__(self, channel, timeout = DEFAULT_TIMEOUT,
                 connect_tries = DEFAULT_CONNECT_TRIES,
                 settle_delay = DEFAULT_SETTLE_DELAY):
        self._ser = channel
        self.timeout = timeout
        self.connect_tries = connect_tries
        self.settle_delay = settle_delay
        self.bp_mode = None         # None = user terminal / unknown
        self.transport = None

    @classmethod
    def open(cls, device, speed = DEFAULT_BAUDRATE, **kwargs):
        """
        open(device) - Open the serial port 'device' and wrap it in a session
        """
        timeout = kwargs.get("timeout", DEFAULT_TIMEOUT)
        try:
            ser = serial.Serial(port = device, baudrate = speed, timeout = timeout)
        except serial.SerialException as e:
            raise BusPyrateIOError("Unable to open %s: %s" % (device, e)) from e
        return cls(ser, **kwargs)

    def __str__(self):
        if self.bp_firmware is None:
            return "BusPirate %s" % (self.bp_version or "(unknown version)")
        return "BusPirate %s (Firmware %d.%d)" % (self.bp_version, self.bp_firmware // 100, self.bp_firmware % 100)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connected(self):
        return self.bp_mode is not None

    def get_serial(self):
        return self._ser

    def connect(self):
        """
        Bring the Bus Pirate into binary (BBIO) mode.

        Sends the reset command up to 'connect_tries' times, each time
        waiting for "BBIO1". Failed attempts are retried silently, when
        all of them fail ConnectTimeout is raised.
        """
        try:
            self._ser.reset_input_buffer()
            self._ser.reset_output_buffer()
            self._ser.timeout = self.timeout
        except (serial.SerialException, OSError) as e:
            raise BusPyrateIOError("Unable to prepare channel: %s" % e) from e

        wanted = BP_Mode.get_str(BP_Mode.bbio)
        log.info("Connecting to Bus Pirate")
        for attempt in range(1, self.connect_tries + 1):
            try:
                self.send_command(BBIO.CMD_RESET)
                buf = self.read_response(len(wanted))
            except BusPyrateError as e:
                log.debug("connect attempt %d: %s", attempt, e)
                continue
            if buf == wanted:
                log.info("Connected after %d attempt(s)", attempt)
                self.bp_mode = BP_Mode.bbio
                self.transport = None
                return True
            log.debug("connect attempt %d: got %r", attempt, buf)
        raise ConnectTimeout("Unable to enter binary mode after %d attempts" % self.connect_tries)

    def write_bytes(self, bytes_):
        bytes_ = bytes(bytes_)
        log.debug("write_bytes(%s)", _hex(bytes_))
        try:
            self._ser.write(bytes_)
            self._ser.flush()
        except (serial.SerialException, OSError) as e:
            raise BusPyrateIOError("Write failed: %s" % e) from e

    def send_command(self, command):
        self.write_bytes([command])

    def _read(self, size):
        try:
            return self._ser.read(size)
        except (serial.SerialException, OSError) as e:
            raise BusPyrateIOError("Read failed: %s" % e) from e

    def read_response(self, size):
        """
        read_response(size) - Read exactly 'size' bytes

        Raises NoDataError when the first read times out empty. Once the
        device has started answering the read is repeated until 'size'
        bytes arrived, with no deadline of its own: a device that stops
        halfway blocks the caller.
        """
        buf = self._read(size)
        if not buf:
            raise NoDataError("No data read (expected %d bytes)" % size)
        while len(buf) < size:
            buf += self._read(size - len(buf))
        log.debug("read_response(%d): %s", size, _hex(buf))
        return buf

    def expect_ok(self, what):
        ret = self.read_response(1)[0]
        if ret != ACK_OK:
            raise AckMismatch(what, ret)

    def switch_mode(self, mode, params = ()):
        """
        switch_mode(mode, params) - Enter bus mode 'mode' from BBIO

        Only I2C is implemented, 'params' is its (speed, pins, pullup)
        triple. Returns the new transport, also kept as self.transport.
        """
        mode = BP_Mode(mode)
        if mode != BP_Mode.i2c:
            raise UnsupportedMode("%s mode is not implemented" % mode.name.upper())
        if self.bp_mode is None:
            raise NotConnected("Not in binary mode, connect() first")
        if self.bp_mode != BP_Mode.bbio:
            raise ModeSwitchFailed("Already in %s mode" % self.bp_mode.name.upper())

        wanted = BP_Mode.get_str(mode)
        self.send_command(BP_Mode.get_cmd(mode))
        buf = self.read_response(len(wanted))
        if buf != wanted:
            raise ModeSwitchFailed("Entering %s mode: expected %r, got %r" % (mode.name.upper(), wanted, buf))
        self.bp_mode = mode
        log.info("Entered %s mode", mode.name.upper())

        # No rollback: on failure the device stays in the new mode, connect() recovers
        try:
            self.transport = I2C(self, *params)
        except BusPyrateError as e:
            raise ModeSwitchFailed("%s setup failed: %s" % (mode.name.upper(), e)) from e
        return self.transport

    def exit_mode(self):
        """
        exit_mode() - Leave the current bus mode back to BBIO
        """
        if self.bp_mode is None:
            raise NotConnected("Not in binary mode")
        if self.bp_mode == BP_Mode.bbio:
            return
        wanted = BP_Mode.get_str(BP_Mode.bbio)
        self.send_command(BBIO.CMD_RESET)
        buf = self.read_response(len(wanted))
        if buf != wanted:
            raise ModeSwitchFailed("Leaving %s mode: expected %r, got %r" % (self.bp_mode.name.upper(), wanted, buf))
        log.info("Left %s mode", self.bp_mode.name.upper())
        self.bp_mode = BP_Mode.bbio
        self.transport = None

    def verify_mode(self, mode = None):
        if self.bp_mode is None:
            raise NotConnected("Not in binary mode")
        if mode is None:
            mode = self.bp_mode
        wanted = BP_Mode.get_str(mode)
        if self.bp_mode == BP_Mode.bbio:
            self.send_command(BBIO.CMD_RESET)
        else:
            # Every bus mode answers 0x01 with its version string
            self.send_command(I2C.CMD_I2C_VERSION)
        buf = self.read_response(len(BP_Mode.get_str(self.bp_mode)))
        log.debug("verify_mode(): buf=%r, wanted=%r", buf, wanted)
        return buf == wanted

    def reset(self):
        """
        Return the Bus Pirate to its user terminal and pick up the
        hardware and firmware versions from the banner it prints.
        """
        self.exit_mode()
        self.send_command(BBIO.CMD_RESET_BP)
        self.expect_ok("Reset")
        self.bp_mode = None
        self._reset_parse()

    def _reset_parse(self):
        while True:
            line = self._ser.readline()
            if not line:
                break
            buf = line.decode('ascii', 'replace').strip()

            # Bus Pirate v3
            m = re.match(r"Bus Pirate (v.*)", buf)
            if m:
                self.bp_version = m.group(1)

            # Firmware v5.10 (r559)  Bootloader v4.4
            m = re.match(r"Firmware v(\d+)\.(\d+).*Bootloader v(\d+)\.(\d+)", buf)
            if m:
                self.bp_firmware = 100 * int(m.group(1)) + int(m.group(2))
                self.bp_bootloader = 100 * int(m.group(3)) + int(m.group(4))

            if buf.endswith("HiZ>"):
                break

    def close(self):
        try:
            if self.bp_mode is not None:
                self.reset()
        finally:
            self._ser.close()


class I2C(BusTransport):
    SPEED_5KHZ      = 0b00
    SPEED_50KHZ     = 0b01
    SPEED_100KHZ    = 0b10
    SPEED_400KHZ    = 0b11

    PIN_CS          = 0x01
    PIN_AUX         = 0x02
    PIN_PULLUPS     = 0x04
    PIN_POWER       = 0x08

    PULLUP_3V3      = 0x01
    PULLUP_5V       = 0x02

    CMD_EXIT        = 0x00  # Back to BBIO, responds "BBIO1"
    CMD_I2C_VERSION = 0x01  # Responds "I2C1"
    CMD_START_BIT   = 0x02
    CMD_STOP_BIT    = 0x03
    CMD_READ_BYTE   = 0x04
    CMD_SEND_ACK    = 0x06
    CMD_SEND_NACK   = 0x07
    CMD_WRITE_READ  = 0x08  # Not implemented here
    CMD_BUS_SNIFFER = 0x0F  # Not implemented here

    CMD_WRITE_BYTES = 0x10  # OR with data length (0x0 = 1 Byte, 0xF = 16 bytes)
    CMD_PERIPHERALS = 0x40  # OR with 0xWXYZ (W=power, X=pullups, Y=AUX, Z=CS)
    CMD_PULLUP_VOLT = 0x50  # OR with 0x01 = 3.3V or 0x02 = 5V (BPv4 only)
    CMD_SET_SPEED   = 0x60  # OR with I2C speed (3=~400kHz, 2=~100kHz, 1=~50kHz, 0=~5kHz)

    MAX_WRITE       = 16

    mode = BP_Mode.i2c

    def __init__(self, buspirate, speed = SPEED_5KHZ, pins = 0, pullup = PULLUP_3V3):
        self._bp = buspirate
        self.set_speed(speed)
        self.config_pins(pins)
        self.set_pullup_voltage(pullup)

    def _command_ok(self, command, what):
        self._bp.send_command(command)
        self._bp.expect_ok(what)

    def set_speed(self, speed):
        self._command_ok(self.CMD_SET_SPEED | (speed & 0x03), "I2C Set Speed")

    def config_pins(self, pins):
        self._command_ok(self.CMD_PERIPHERALS | (pins & 0x0F), "I2C Configure Pins")

    def set_pullup_voltage(self, volts):
        self._command_ok(self.CMD_PULLUP_VOLT | (volts & 0x0F), "I2C Pull-up Voltage")

    def version(self):
        self._bp.send_command(self.CMD_I2C_VERSION)
        return self._bp.read_response(len(BP_Mode.get_str(self.mode)))

    def exit(self):
        self._bp.exit_mode()

    def send_start(self):
        self._command_ok(self.CMD_START_BIT, "I2C Start Bit")

    def send_stop(self):
        self._command_ok(self.CMD_STOP_BIT, "I2C Stop Bit")

    def send_ack(self):
        self._bp.send_command(self.CMD_SEND_ACK)
        return self._bp.read_response(1)

    def send_nack(self):
        self._bp.send_command(self.CMD_SEND_NACK)
        return self._bp.read_response(1)

    def _check_length(self, data):
        if not data or len(data) > self.MAX_WRITE:
            raise InvalidArgument("I2C write takes 1-%d bytes, got %d" % (self.MAX_WRITE, len(data or b"")))

    def _write(self, data):
        """
        Bulk write without start/stop bits.

        Returns the per-byte ACK/NACK receipt, which is not checked.
        """
        self._check_length(data)
        data = bytes(data)
        self._bp.send_command(self.CMD_WRITE_BYTES | (len(data) - 1))
        time.sleep(self._bp.settle_delay)
        self._bp.expect_ok("I2C Bulk Write")
        self._bp.write_bytes(data)
        time.sleep(self._bp.settle_delay)
        return self._bp.read_response(len(data))

    def write(self, data):
        # Nothing restores the bus if a step fails halfway, send_stop() is up to the caller
        self._check_length(data)
        self.send_start()
        self._write(data)
        self.send_stop()

    def _read_byte(self):
        self._bp.send_command(self.CMD_READ_BYTE)
        time.sleep(self._bp.settle_delay)
        return self._bp.read_response(1)[0]

    def read(self, address, buf):
        """
        read(address, buf) - Read len(buf) bytes from 'address' into 'buf'

        'address' is the full 8-bit address byte, R/W bit included.
        Every byte but the last is ACKed, the last one gets a NACK.
        """
        count = len(buf)
        if count == 0:
            raise InvalidArgument("I2C read needs a non-empty buffer")
        self.send_start()
        self._write([address])
        for n in range(count):
            buf[n] = self._read_byte()
            if n < count - 1:
                self.send_ack()
        self.send_nack()
        self.send_stop()
        return count
