"""Game Server Reconciler (GSR).

Kubernetes operator that keeps groups of game-server pods and their
front-facing proxies in line with the ``ServerGroup`` / ``Proxy`` custom
resources an operator declares:
 - generation based drift detection
 - idempotent create/scale/delete of pods
 - per-group configuration bundles derived from version-keyed templates
 - status tracking from live pod state
 - topology updates pushed to connected proxies (Server-Sent Events)
"""
