"""BenMarket loyalty API."""
