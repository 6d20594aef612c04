"""
Release Watcher - Monitor GitHub release feeds and notify chat subscribers.

An asyncio application that polls release Atom feeds, matches new
releases against named per-repository filters and delivers de-duplicated
notifications to Telegram chats, retrying failed deliveries.
"""

__version__ = "1.0.0"
