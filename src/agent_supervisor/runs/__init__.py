"""Supervised agent runs: storage facade, lifecycle, process supervision, scheduling."""
