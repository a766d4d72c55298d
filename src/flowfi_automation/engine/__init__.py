"""Automation engine: triggers, execution, payments and persistence."""
