"""Tuning job lifecycle: submission, dispatch, and outcome recording."""
