"""
Test Services Package
Tests for schedule expansion, lifecycle mutators and escalation bookkeeping
"""
