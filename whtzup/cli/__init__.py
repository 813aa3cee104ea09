"""Command-line interface for inspecting and driving the whtzup sync client."""
