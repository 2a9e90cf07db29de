"""
Test Suite for the Task Governance Engine

One module per component:
- scope checker, gate evaluator, command safety, constraint evaluator,
  memory recall
- task lifecycle coordinator
- store, records, configuration and the tool router
"""
