"""
Approval Workflow Engine
Blueprint registry.
"""
