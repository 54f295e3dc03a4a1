"""AI provider access and request orchestration."""
