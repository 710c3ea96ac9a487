"""Adapters that connect the docwatch core to SQLite, Telegram and HTTP services."""
