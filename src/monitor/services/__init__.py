"""Engine services.

Data flow: scrape_coordinator -> metric_store -> rule_evaluator -> notifier -> webhook.
- rule_expr.py parses and evaluates alert expressions
- event_history.py records dispatched notifications (memory or MongoDB)
- metrics_service.py / alerts_service.py back the HTTP routers
"""

# No imports here; routers and the app state import the service modules directly.
