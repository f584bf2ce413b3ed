"""Queue-driven web push dispatcher with hour-bucketed delivery statistics.

This package provides:

- Fan-out of messages to targeted visitors or to a whole domain
- A queue consumer delivering each push task through an external push gateway
- Classification of gateway responses into delivery outcomes
- Atomic hourly counters per (domain, message) with ``sent = delivered + not_delivered``
- Prometheus metrics and a small FastAPI surface for health and metrics

Example:
    Wiring the service and publishing a domain-wide message::

        from webpush_dispatch.service import WebPushDispatchService

        service = WebPushDispatchService(db_path="/data/webpush.db")
        await service.start()
        service.publisher.publish_to_domain("example.com", message)
"""
