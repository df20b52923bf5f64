"""Lightweight asyncio-friendly SMTP connection pool."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple

import aiosmtplib


class SMTPPool:
    """Hand out SMTP connections exclusively, reusing idle ones.

    A connection is owned by one caller between :meth:`connection` entry and
    exit, so concurrent recipient sends never share a session. Idle
    connections older than ``ttl`` seconds are closed by :meth:`cleanup`.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        *,
        use_tls: bool = False,
        ttl: int = 300,
        timeout: float = 10.0,
    ):
        """Create a pool for one SMTP server and account."""
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.ttl = ttl
        self.timeout = timeout
        self.idle: List[Tuple[aiosmtplib.SMTP, float]] = []
        self.lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # Implicit TLS when use_tls is set, otherwise STARTTLS is negotiated if offered
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=False if self.use_tls else None,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except Exception:
            return False
        return getattr(response, "code", None) == 250

    @staticmethod
    async def _close(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception:
            pass

    async def acquire(self) -> aiosmtplib.SMTP:
        """Return a healthy connection reserved for the caller.

        Idle connections past ``ttl`` or failing NOOP are closed and skipped.
        A new connection is opened when none is left.

        Returns:
            An open, authenticated :class:`aiosmtplib.SMTP` client. The caller
            must hand it back with :meth:`release` or :meth:`discard`.
        """
        while True:
            async with self.lock:
                entry = self.idle.pop() if self.idle else None
            if entry is None:
                return await self._connect()
            smtp, last_used = entry
            if (time.monotonic() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._close(smtp)

    async def release(self, smtp: aiosmtplib.SMTP) -> None:
        """Give a connection back for reuse."""
        async with self.lock:
            self.idle.append((smtp, time.monotonic()))

    async def discard(self, smtp: aiosmtplib.SMTP) -> None:
        """Close a connection that must not be reused."""
        await self._close(smtp)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection, dropping it if the body raises."""
        smtp = await self.acquire()
        try:
            yield smtp
        except BaseException:
            await self.discard(smtp)
            raise
        await self.release(smtp)

    async def cleanup(self) -> None:
        """Close idle connections that expired or stopped answering."""
        now = time.monotonic()
        async with self.lock:
            items = list(self.idle)
            self.idle.clear()

        keep: List[Tuple[aiosmtplib.SMTP, float]] = []
        for smtp, last_used in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                keep.append((smtp, last_used))
            else:
                await self._close(smtp)

        async with self.lock:
            self.idle.extend(keep)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            items = list(self.idle)
            self.idle.clear()
        for smtp, _ in items:
            await self._close(smtp)
