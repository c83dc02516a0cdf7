"""
Test Tools Package
Tests for outbound notification gateways
"""
