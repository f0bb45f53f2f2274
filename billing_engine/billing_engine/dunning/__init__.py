"""Overdue and upcoming invoice notifications."""

from __future__ import annotations

from billing_engine.dunning.classifier import DunningKind, classify, is_paid
from billing_engine.dunning.mailer import Mailer, MailResult, MockMailer, SMTPMailer, build_mailer
from billing_engine.dunning.runner import DunningResult, DunningRunner

__all__ = [
    "DunningKind",
    "DunningResult",
    "DunningRunner",
    "MailResult",
    "Mailer",
    "MockMailer",
    "SMTPMailer",
    "build_mailer",
    "classify",
    "is_paid",
]
