"""
Test Actions Package
Tests for reminder delivery, patient responses and escalation levels
"""
