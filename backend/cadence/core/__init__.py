"""Core services and shared infrastructure."""
