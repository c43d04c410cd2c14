"""Tests for the helm controller package."""
