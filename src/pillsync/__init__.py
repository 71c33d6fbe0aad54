"""Device-state synchronization and missed-dose verification service."""
