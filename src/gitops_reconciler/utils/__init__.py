# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains the Kubernetes client, logging and operator safety helpers

"""
GitOps Reconciler Utilities Package

Shared utilities:
    - kube_client.py: Kubernetes REST client with retry logic
    - logging.py: Structured logging with operation IDs and audit trail
    - safety.py: Confirmation patterns, rate limits and secret masking
"""
