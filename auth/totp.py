"""
auth/totp.py -- RFC 6238 time-based one-time codes via pyotp.

Compatible with Google Authenticator, Authy and any other RFC 6238 app:
SHA-1, 6 digits, 30-second steps. verify_code() accepts the current step and
one step either side to absorb clock drift between phone and server.
"""

from __future__ import annotations

import secrets
from datetime import datetime

import pyotp

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_DRIFT_STEPS = 1


class TotpEngine:
    """Generates per-user secrets and verifies time-based codes.

    Args:
        issuer:              Name shown in authenticator apps.
        recovery_code_count: Number of backup codes produced per enrollment.
    """

    def __init__(self, issuer: str = "StepGuard", recovery_code_count: int = 8) -> None:
        self.issuer = issuer
        self.recovery_code_count = recovery_code_count

    def generate_secret(self) -> str:
        """Return a 160-bit random secret, base32-encoded (32 chars)."""
        return pyotp.random_base32()

    def generate_recovery_codes(self) -> set[str]:
        """Return single-use backup codes formatted XXXX-XXXX (uppercase hex)."""
        codes: set[str] = set()
        while len(codes) < self.recovery_code_count:
            code = secrets.token_hex(4).upper()
            codes.add(f"{code[:4]}-{code[4:]}")
        return codes

    def verify_code(self, secret: str, code: str | None, at: datetime | None = None) -> bool:
        """Return True if code is valid for secret at time `at` (default: now), +-1 step."""
        if not secret or not code:
            return False
        # Authenticator apps often display "123 456"
        code = "".join(ch for ch in str(code) if ch.isdigit())
        if len(code) != TOTP_DIGITS:
            return False
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.verify(code, for_time=at, valid_window=TOTP_DRIFT_STEPS)

    def code_at(self, secret: str, at: datetime) -> str:
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).at(at)

    def provisioning_uri(self, secret: str, email: str) -> str:
        """otpauth:// URI for QR-code provisioning in an authenticator app."""
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.issuer)
