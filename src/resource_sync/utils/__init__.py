# ABOUTME: Utilities package initialization for the Resource Sync controller
# ABOUTME: Contains the MCP sync client, Kubernetes access helpers and logging setup

"""
Resource Sync Utilities Package

Shared utilities:
    - client.py: MCP sync client with retry logic and partial-failure handling
    - credentials.py: Bearer token lookup from Kubernetes Secrets
    - kube.py: Raw JSON Kubernetes access for discovery and list/watch
    - logging.py: Structured logging with correlation IDs
"""
