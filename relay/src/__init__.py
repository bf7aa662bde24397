"""
Edge telemetry relay package.

Receives sensor readings over MQTT, buffers them durably in date-named
directories on local storage, and relays them to a remote object store
over HTTP, deleting each record only after the remote store accepts it.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
