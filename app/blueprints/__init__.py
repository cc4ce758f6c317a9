"""
NPT Approval Workflow Service
Blueprint registry.

    approval_bp        reports, submission, decisions, my-approvals
    workflow_admin_bp  workflows, steps, role assignments, delegations
"""
