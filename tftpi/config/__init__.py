"""Configuration loading for tftpi."""
