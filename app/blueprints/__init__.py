"""
Approval Routing Engine
HTTP blueprints. All routes live under /api/v1 and translate JSON to service
calls; services own validation, commits and logging.
"""
