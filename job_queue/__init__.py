"""
Job Queue — Decouples API submission from side-effecting work.

- The API ENQUEUES jobs onto named queues and PUBLISHES events on channels
- JobConsumer loops pull jobs one at a time and dead-letter failures
- EventSubscriber fans published events out to every registered handler
- Supports Redis (production) and in-memory asyncio primitives (dev)
"""
