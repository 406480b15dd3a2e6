"""Loyalty job exports."""

from .birthdays import birthday_matches, run_birthday_bonuses  # noqa: F401

__all__ = ["birthday_matches", "run_birthday_bonuses"]
