"""Core domain package for docwatch.

Core contains change detection, polling, snapshots, diffing and rules without
any Telegram, HTTP or storage-specific code, keeping the business logic
portable.
"""
