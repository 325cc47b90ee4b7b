"""Republishing, health-check, circuit-breaker metrics and scheduling logic for a publish/subscribe pipeline."""

__version__ = "0.1.0"