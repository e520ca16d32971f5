"""Source fetching, decoding, parsing and per-security harvest orchestration."""
