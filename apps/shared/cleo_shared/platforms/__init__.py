"""External social platform clients."""
