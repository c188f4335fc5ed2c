"""Programmatic play sessions: lifecycle, per-agent rate limits, score settlement."""
