"""Relay audit engine.

Pulls stored events from a nostr relay page by page, extracts typed
records (balances or transactions), and merges them into a deduplicated
ledger under last-write-wins. One engine serves every audit mode; the
mode only picks the record extractor.
"""
