"""Compose Convergence Reconciler (CCR).

Converges containers, networks and volumes on a single Docker host toward
a compose file:
 - labeled inventory of everything a project owns
 - drift detection through configuration fingerprints
 - an explicit create/keep/replace/remove plan before anything changes
 - ordered provisioning and teardown

There is no state outside the labels on the resources themselves; every
run rediscovers what exists by querying the runtime.
"""
