"""
Test suite for the OPD Token Allocation Service.

Contains unit tests for the allocation core and integration tests for the API.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
