"""Shared fixtures for the confighub test suite."""

import os

import pytest

from confighub.crypto import KEY_LENGTH, CredentialCipher
from confighub.store import CredentialStore


class FakeClock:
    """Settable epoch clock for token-expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def master_key() -> bytes:
    return os.urandom(KEY_LENGTH)


@pytest.fixture
def cipher(master_key) -> CredentialCipher:
    return CredentialCipher(master_key)


@pytest.fixture
def store(tmp_path, cipher) -> CredentialStore:
    return CredentialStore(tmp_path / "data", cipher)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
