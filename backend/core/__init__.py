"""Core coach logic: domain records and the rule evaluation engine.

This package contains pure business logic with no I/O dependencies
(no database, Redis, or network access). Storage and queueing live in
app/ and reach the engine through the CoachGateway protocol.
"""
