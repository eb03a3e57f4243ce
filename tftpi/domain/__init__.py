"""Domain objects shared across tftpi components."""
