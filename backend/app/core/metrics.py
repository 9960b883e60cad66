"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'billing_webhook_events_total',
        'Total number of billing webhook deliveries by outcome',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('billing_webhook_events_total')

try:
    webhook_signature_failures_counter = Counter(
        'billing_webhook_signature_failures_total',
        'Total number of webhook deliveries rejected for a bad signature'
    )
except ValueError:
    webhook_signature_failures_counter = REGISTRY._names_to_collectors.get('billing_webhook_signature_failures_total')

# Reconciliation metrics
try:
    transitions_counter = Counter(
        'billing_subscription_transitions_total',
        'Total number of applied subscription state transitions',
        ['source', 'target', 'trigger']
    )
except ValueError:
    transitions_counter = REGISTRY._names_to_collectors.get('billing_subscription_transitions_total')

try:
    stale_transitions_counter = Counter(
        'billing_subscription_stale_transitions_total',
        'Total number of transitions dropped by the ordering guard',
        ['trigger']
    )
except ValueError:
    stale_transitions_counter = REGISTRY._names_to_collectors.get('billing_subscription_stale_transitions_total')

# Gateway metrics
try:
    gateway_calls_counter = Counter(
        'billing_gateway_calls_total',
        'Total number of billing provider calls',
        ['operation', 'status']
    )
except ValueError:
    gateway_calls_counter = REGISTRY._names_to_collectors.get('billing_gateway_calls_total')

# Subscription gauges (refreshed by the analytics endpoints)
try:
    active_subscriptions_gauge = Gauge(
        'billing_active_subscriptions',
        'Number of subscriptions currently active'
    )
except ValueError:
    active_subscriptions_gauge = REGISTRY._names_to_collectors.get('billing_active_subscriptions')
