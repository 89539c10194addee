"""BetBlocker: NextDNS blocklist management and Apple DNS profile generation."""
