"""
auth/passwords.py -- Argon2id password hashing off the event loop, plus policy.

Security design decisions:
  Hashing: argon2-cffi PasswordHasher with Type.ID. Defaults are the floor
       enforced by core.config (64 MiB, 3 iterations, 4 lanes): memory-hard
       enough to make offline brute force expensive while keeping a single
       sign-in in the tens of milliseconds.

  Worker pool: every hash/verify runs on a dedicated, bounded
       ThreadPoolExecutor and is awaited via loop.run_in_executor(). The event
       loop keeps serving other requests while argon2 burns CPU, and the pool
       size caps peak memory at workers * memory_cost.

  Timing equalization [C1]: verify_dummy() runs a full verify against a
       throwaway hash so "unknown email" costs the same as "wrong password".
       The dummy hash is computed lazily on first use.

  Policy: at least 8 characters, at least one letter and one digit.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import re
import threading
from concurrent.futures import ThreadPoolExecutor

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from auth.errors import PasswordTooWeakError

MIN_PASSWORD_LENGTH = 8

_LETTER = re.compile(r"[A-Za-z]")
_DIGIT = re.compile(r"\d")


def validate_password_strength(password: str) -> None:
    """Raise PasswordTooWeakError unless the password meets the policy."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordTooWeakError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not _LETTER.search(password) or not _DIGIT.search(password):
        raise PasswordTooWeakError("Password must contain at least one letter and one number")


class PasswordHashPool:
    """Argon2id hasher bound to its own worker threads.

    Usage:
        pool = PasswordHashPool(memory_cost=65536, time_cost=3, parallelism=4)
        digest = await pool.hash("abc12345")
        ok = await pool.verify(digest, "abc12345")
        pool.shutdown()
    """

    def __init__(
        self,
        *,
        memory_cost: int = 65536,
        time_cost: int = 3,
        parallelism: int = 4,
        max_workers: int = 2,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="argon2")
        self._dummy_hash: str | None = None
        self._dummy_lock = threading.Lock()

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def hash(self, password: str) -> str:
        return await self._run(self._hasher.hash, password)

    async def verify(self, password_hash: str, password: str) -> bool:
        """Return True if password matches. Malformed hashes count as a mismatch."""
        return await self._run(self._verify_sync, password_hash, password)

    async def verify_dummy(self, password: str) -> None:
        """Spend one verify's worth of work for a non-existent account [C1]."""
        await self._run(self._verify_dummy_sync, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def _verify_dummy_sync(self, password: str) -> None:
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._hasher.hash("authcore_timing_dummy")
        self._verify_sync(self._dummy_hash, password)
