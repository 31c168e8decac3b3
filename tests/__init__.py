"""Test suite for the Hestia model serving orchestrator."""
