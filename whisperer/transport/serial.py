"""Serial transport built on termios.

The port is opened non-blocking and polled: ``receive`` returns ``b""``
when nothing is waiting, and the receive loop backs off for the idle
interval. This keeps USB-CDC adapters, which only deliver data when asked,
on the same code path as UARTs.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import termios
from typing import Final

from ..const import DEFAULT_IDLE_POLL_INTERVAL, DEFAULT_SERIAL_BAUDRATE, DEFAULT_SERIAL_READ_SIZE
from ..errors import TransportError

logger = logging.getLogger("whisperer.transport.serial")

# Baudrate constants mapping (Termios)
BAUDRATE_MAP: Final[dict[int, int]] = {
    1200: termios.B1200, 2400: termios.B2400, 4800: termios.B4800,
    9600: termios.B9600, 19200: termios.B19200, 38400: termios.B38400, 57600: termios.B57600,
    115200: termios.B115200, 230400: termios.B230400, 460800: termios.B460800,
    500000: termios.B500000, 576000: termios.B576000, 921600: termios.B921600,
    1000000: termios.B1000000, 1500000: termios.B1500000, 2000000: termios.B2000000,
}

# ESP-style boards reset while RTS is asserted and DTR is released.
_RESET_PULSE: Final[float] = 0.1


def configure_serial_port(fd: int, baudrate: int, exclusive: bool = False) -> None:
    """Put *fd* into raw 8N1 mode at *baudrate*."""
    speed = BAUDRATE_MAP.get(baudrate)
    if speed is None:
        raise ValueError(f"Unsupported baudrate: {baudrate}")

    if exclusive:
        try:
            fcntl.ioctl(fd, termios.TIOCEXCL)
        except (OSError, AttributeError):
            logger.debug("TIOCEXCL unavailable for fd %d", fd)

    attrs = termios.tcgetattr(fd)
    attrs[0] = 0  # iflag: no processing
    attrs[1] = 0  # oflag: no processing
    attrs[2] = termios.CS8 | termios.CREAD | termios.CLOCAL
    attrs[3] = 0  # lflag: raw mode
    attrs[6][termios.VMIN] = 0
    attrs[6][termios.VTIME] = 0
    attrs[4] = speed
    attrs[5] = speed
    termios.tcsetattr(fd, termios.TCSANOW, attrs)
    termios.tcflush(fd, termios.TCIOFLUSH)


def _set_modem_lines(fd: int, *, dtr: bool, rts: bool) -> None:
    set_bits = clear_bits = 0
    for flag, enabled in ((termios.TIOCM_DTR, dtr), (termios.TIOCM_RTS, rts)):
        if enabled:
            set_bits |= flag
        else:
            clear_bits |= flag
    if set_bits:
        fcntl.ioctl(fd, termios.TIOCMBIS, set_bits.to_bytes(4, "little"))
    if clear_bits:
        fcntl.ioctl(fd, termios.TIOCMBIC, clear_bits.to_bytes(4, "little"))


class SerialTransport:
    """Raw serial port device transport."""

    def __init__(
        self,
        port: str,
        *,
        baudrate: int = DEFAULT_SERIAL_BAUDRATE,
        read_size: int = DEFAULT_SERIAL_READ_SIZE,
        reset_on_connect: bool = False,
        exclusive: bool = True,
        idle_poll_interval: float = DEFAULT_IDLE_POLL_INTERVAL,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.read_size = read_size
        self.reset_on_connect = reset_on_connect
        self.exclusive = exclusive
        self.idle_poll_interval = idle_poll_interval
        self._fd: int | None = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    async def connect(self) -> bool:
        if self._fd is not None:
            await self.disconnect()
        try:
            fd = os.open(self.port, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
        except OSError as exc:
            logger.error("Could not open serial port %s: %s", self.port, exc)
            return False
        try:
            configure_serial_port(fd, self.baudrate, exclusive=self.exclusive)
        except (OSError, termios.error, ValueError) as exc:
            os.close(fd)
            logger.error("Failed to configure %s: %s", self.port, exc)
            return False
        self._fd = fd
        if self.reset_on_connect:
            await self.restart_device()
        logger.info("Opened %s at %d baud", self.port, self.baudrate)
        return True

    async def restart_device(self) -> None:
        """Pulse RTS to reset the attached board."""
        if self._fd is None:
            return
        try:
            _set_modem_lines(self._fd, dtr=False, rts=True)
            await asyncio.sleep(_RESET_PULSE)
            _set_modem_lines(self._fd, dtr=False, rts=False)
        except OSError as exc:
            logger.warning("Reset pulse on %s failed: %s", self.port, exc)

    async def disconnect(self) -> bool:
        fd, self._fd = self._fd, None
        if fd is None:
            return False
        try:
            os.close(fd)
        except OSError as exc:
            logger.debug("Closing %s: %s", self.port, exc)
        return True

    async def send(self, data: bytes) -> bool:
        if self._fd is None:
            return False
        view = memoryview(data)
        while view:
            try:
                written = os.write(self._fd, view)
            except BlockingIOError:
                # TX buffer full; wait for the UART to drain.
                await asyncio.sleep(self.idle_poll_interval)
                continue
            except OSError as exc:
                raise TransportError(self.port, f"write failed: {exc}") from exc
            view = view[written:]
        return True

    async def receive(self) -> bytes | None:
        if self._fd is None:
            return None
        try:
            data = os.read(self._fd, self.read_size)
        except BlockingIOError:
            return b""
        except OSError as exc:
            logger.warning("Read from %s failed: %s", self.port, exc)
            await self.disconnect()
            return None
        return data


__all__ = ["BAUDRATE_MAP", "SerialTransport", "configure_serial_port"]
