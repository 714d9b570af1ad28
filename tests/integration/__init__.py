"""
Integration test package for the load harness.

Tests here drive the client against the in-process fake server and
demonstrate:
- Login retry behaviour
- Backend worker tasks over a real autoupdate stream
- Cancellation of blocked requests
- Test runs over many clients
"""
