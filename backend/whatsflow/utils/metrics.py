# /whatsflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# Prometheus metrics for flow execution, kept in one place.

# Runs
flow_runs_counter = Counter('flow_runs_total', 'Flow runs by final status', ['status', 'error_kind'])
active_runs_gauge = Gauge('flow_active_runs', 'Flow runs currently in flight')
run_duration_histogram = Histogram('flow_run_duration_seconds', 'Wall-clock duration of flow runs')

# Steps
node_executions_counter = Counter('flow_node_executions_total', 'Executed nodes', ['node_type'])
condition_errors_counter = Counter('flow_condition_errors_total', 'Condition expressions that failed to evaluate')

# Side effects
message_counter = Counter('flow_messages_total', 'Outbound messages sent by flows', ['kind', 'status'])
webhook_action_counter = Counter('flow_webhook_actions_total', 'Webhook actions', ['status'])
