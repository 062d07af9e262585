"""Verification templates executed as argv during JUDGE."""

from __future__ import annotations

from relais.verification.runner import (
    VerificationReport,
    VerificationRun,
    VerificationRunner,
    VerificationTier,
)

__all__ = ["VerificationReport", "VerificationRun", "VerificationRunner", "VerificationTier"]
