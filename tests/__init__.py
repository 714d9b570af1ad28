"""
Test suite for the autoupdate load harness.

This package contains:
- unit/: Tests of single modules without a network
- integration/: Tests against an in-process fake server
"""
