"""Market-data provider implementations."""
