"""
Core infrastructure layer for Backstube Bot.

Subpackages
-----------
- config:    static (env) and tunable (YAML) configuration
- logging:   structured, queue-backed logging with context propagation
- ratelimit: in-process rate buckets shared by gateway and REST
- gateway:   transport, wire codec, heartbeat and session state machine
- event:     command registry, dispatcher and bounded handler pool
- http:      rate-limited REST client

Nothing in here knows about individual commands or feature modules.
"""
