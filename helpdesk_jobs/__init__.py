"""Shared libraries for the helpdesk job pipeline.

Modules include configuration, RabbitMQ connection and topology helpers, the
job publisher, the consumer/dispatcher, downstream HTTP adapters, email
templates, metrics, log shipping and tracing utilities.
"""
