"""Dispatch core: storage, lifecycle, arbitration, escalation and fan-out."""
