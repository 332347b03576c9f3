"""Inbound event handling."""

from pycadence.triggers.matcher import EventTriggerMatcher, MatchOutcome, MatchResult

__all__ = ["EventTriggerMatcher", "MatchOutcome", "MatchResult"]
