"""Operator notification routing.

Notifications fan out to every configured sink: a Discord-compatible
webhook, local JSON files, or any custom sink implementing the
``BaseSink`` protocol.  Delivery is fire-and-forget; the
``NotificationDispatcher`` never lets a sink failure reach the pipeline.
"""
