"""Latency and throughput measurement engines."""
