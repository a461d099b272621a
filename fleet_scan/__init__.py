"""Sharded dispatch, completion detection and warehouse transfer for fleet-wide repository scans."""
