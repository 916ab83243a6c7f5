"""Platform components: billing engine and scheduler."""
