"""Tests for scensemble core structures."""
