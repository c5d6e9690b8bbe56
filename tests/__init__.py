"""Test configuration and fixtures"""
import os

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["API_KEY_SALT"] = "test-salt-for-testing-only-0123456789abcdef"
os.environ["LOG_FORMAT"] = "console"
