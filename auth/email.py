"""
auth/email.py -- Fire-and-forget delivery of verification, reset and welcome emails.

The local provider never waits on mail delivery: a slow or failing SMTP relay
must not slow down sign-up or leak (through latency) whether an address has an
account. EmailDispatcher submits each send to its own small thread pool and
returns immediately. Failures are logged from a done-callback and otherwise
ignored.

Transports implement the AuthEmailSender protocol. LoggingEmailSender is the
development transport; it logs that a message went out and, only when
reveal_links is set, the link itself (tokens are credentials).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Protocol

logger = logging.getLogger("authcore.auth.email")


class AuthEmailSender(Protocol):
    def send_verification_email(self, email: str, url: str) -> None: ...

    def send_password_reset_email(self, email: str, url: str) -> None: ...

    def send_welcome_email(self, email: str, display_name: str | None) -> None: ...


class LoggingEmailSender:
    """Development transport: writes one log line per message."""

    def __init__(self, reveal_links: bool = False) -> None:
        self.reveal_links = reveal_links

    def send_verification_email(self, email: str, url: str) -> None:
        logger.info("Verification email to %s%s", email, f": {url}" if self.reveal_links else "")

    def send_password_reset_email(self, email: str, url: str) -> None:
        logger.info("Password reset email to %s%s", email, f": {url}" if self.reveal_links else "")

    def send_welcome_email(self, email: str, display_name: str | None) -> None:
        logger.info("Welcome email to %s (%s)", email, display_name or "-")


def build_token_link(base_url: str, token: str) -> str:
    """Append ?token=<t> (or &token=<t> if base_url already has a query)."""
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}token={token}"


class EmailDispatcher:
    """Queues email sends without blocking the caller.

    Usage:
        dispatcher = EmailDispatcher(LoggingEmailSender(), verify_url, reset_url)
        dispatcher.send_verification(email, token)   # returns immediately
        dispatcher.flush(timeout=5)                  # tests / shutdown
    """

    def __init__(
        self,
        sender: AuthEmailSender,
        verify_url: str,
        reset_url: str,
        *,
        max_workers: int = 2,
    ) -> None:
        self.sender = sender
        self.verify_url = verify_url
        self.reset_url = reset_url
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="auth-email")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def send_verification(self, email: str, token: str) -> None:
        self._submit("verification", self.sender.send_verification_email, email, build_token_link(self.verify_url, token))

    def send_password_reset(self, email: str, token: str) -> None:
        self._submit("password_reset", self.sender.send_password_reset_email, email, build_token_link(self.reset_url, token))

    def send_welcome(self, email: str, display_name: str | None) -> None:
        self._submit("welcome", self.sender.send_welcome_email, email, display_name)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued sends. Returns True if none are still pending."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _submit(self, kind: str, fn, email: str, arg) -> None:
        future = self._executor.submit(fn, email, arg)
        with self._lock:
            self._pending.add(future)

        def _done(f: Future) -> None:
            with self._lock:
                self._pending.discard(f)
            exc = f.exception()
            if exc is not None:
                logger.error("Failed to send %s email to %s: %s", kind, email, exc)

        future.add_done_callback(_done)
