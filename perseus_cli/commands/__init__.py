"""Command handlers for the perseus CLI. Each exposes ``cmd_<name>(args) -> int``."""
