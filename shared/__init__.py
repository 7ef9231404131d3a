"""Configuration and logging shared by the worker and its tooling."""
