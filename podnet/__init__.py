"""Pod network attach plugin: address acquisition, endpoint records and cleanup."""
