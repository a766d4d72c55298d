"""DAO governance: membership, proposals and their resolution."""
