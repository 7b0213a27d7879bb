"""Content-addressed replication to an IPFS node (best-effort)."""
