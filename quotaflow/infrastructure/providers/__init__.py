"""Upstream provider adapters (text generation SDKs, HTTP task APIs)."""
