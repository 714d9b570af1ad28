"""
Unit test package for the load harness.

Tests here exercise single modules in isolation:
- Stream line splitting and change decoding
- Task resolution rules
- Worker pool completeness and bounds
- Result rendering
"""
