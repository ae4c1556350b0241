# ABOUTME: GitOps reconciler package initialization
# ABOUTME: Exposes version information and the package layout

"""
GitOps Reconciler - continuous desired-state reconciliation for Kubernetes.

=============================================================================
WHAT DOES THIS PACKAGE DO?
=============================================================================

An Application declares WHERE its manifests live (repository, revision,
path) and WHERE they go (target environment, namespace). The reconciler
runs a control loop per Application:

1. RENDER the manifests of the declared revision (desired state)
2. OBSERVE the objects the Application manages (live state)
3. DIFF the two, ignoring fields the platform fills in by itself
4. SYNC when the policy says so: hooks, ordered waves, prune
5. EVALUATE health and record the outcome in a bounded history

Operators inspect and drive the loops through an MCP server (status, diff,
history, manual sync, rollback, refresh, cancel).

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings (env vars) and declarations file loader
├── models.py            <- Application/Project, objects, deltas, results
├── errors.py            <- Error taxonomy
├── kinds.py             <- Kind registry: REST coordinates, priority, list semantics
├── cluster.py           <- Cluster client contract
├── renderer.py          <- Renderer contract, static and Git directory renderers
├── observer.py          <- Live State Observer
├── diff.py              <- Diff Engine
├── health.py            <- Health Evaluator
├── orchestrator.py      <- Sync Orchestrator
├── validation.py        <- Project allow-list checks
├── controller.py        <- Policy Loop and Reconciler
├── server.py            <- MCP operator surface and main entry point
└── utils/
    ├── kube_client.py   <- Kubernetes REST client (httpx + tenacity)
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Operator action guards and secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
