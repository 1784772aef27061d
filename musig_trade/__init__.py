"""MuSig2 two-party trade protocol server."""
