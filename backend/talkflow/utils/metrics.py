# /talkflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Command pipeline
commands_counter = Counter('talkflow_commands_total', 'Commands handled by the bus', ['command', 'status'])
command_duration_histogram = Histogram('talkflow_command_duration_seconds', 'Command handling time in seconds', ['command'])
step_transitions_counter = Counter('talkflow_step_transitions_total', 'Step transitions performed', ['outcome'])
talk_escalations_counter = Counter('talkflow_talk_escalations_total', 'Talks paused for human handoff')

# External services
ai_requests_counter = Counter('talkflow_ai_requests_total', 'Total AI requests', ['model', 'status'])
database_operations_counter = Counter('talkflow_database_operations_total', 'Database operations', ['operation', 'status'])

# Audit side channel
audit_events_counter = Counter('talkflow_audit_events_total', 'Audit events handled', ['status'])

# HTTP
response_time_histogram = Histogram('talkflow_response_time_seconds', 'Response time in seconds', ['endpoint'])
