"""
secure_memory.py — scoped handling of secret bytes

Python cannot promise that a secret never lands in an immutable copy, so the
rule here is narrower: every secret we own lives in a ``bytearray`` and is
zeroed on every exit path of the scope that acquired it.
"""

from __future__ import annotations
from typing import Optional, Union

BytesLike = Union[bytes, bytearray, memoryview]


def wipe(buf: Optional[bytearray]) -> None:
    """Overwrite ``buf`` with zeros in place. ``None`` is ignored."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


class SecretBuffer:
    """Mutable holder for secret bytes that zeroes itself on close."""

    __slots__ = ("_buf",)

    def __init__(self, data: BytesLike = b""):
        self._buf: Optional[bytearray] = bytearray(data)

    @classmethod
    def from_text(cls, text: str) -> "SecretBuffer":
        return cls(text.encode("utf-8"))

    @property
    def value(self) -> bytearray:
        if self._buf is None:
            raise ValueError("secret buffer already wiped")
        return self._buf

    @property
    def closed(self) -> bool:
        return self._buf is None

    def close(self) -> None:
        wipe(self._buf)
        self._buf = None

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return "SecretBuffer(<redacted>)" if self._buf is not None else "SecretBuffer(<wiped>)"

