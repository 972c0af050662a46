"""Configuration for the activity recorder."""
