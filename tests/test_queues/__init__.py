"""
Test Queues Package
Tests for the delayed job queue, its backends and the workers
"""
