"""Unlock session orchestration."""
