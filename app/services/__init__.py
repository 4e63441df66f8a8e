"""Service layer: event dispatch and message queues."""
