"""
Test Suite for phaseflow

- Rule registry, transition engine and approval workflow
- Event coordinator, dedup tracker and calendar bridge
- Notifications, stores and HTTP API
"""
