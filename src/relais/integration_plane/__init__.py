"""Version-control integration for the tick engine."""
