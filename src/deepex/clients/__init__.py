"""Upstream clients: credential pools, the resilient request layer, chat, search and vision."""
