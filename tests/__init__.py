"""Tests for helm-operator."""
