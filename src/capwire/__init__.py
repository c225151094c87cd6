"""Capwire capability resolver.

Capwire decides how a set of resources should be wired together. Resources
provide capabilities and declare requirements against other resources'
capabilities; the resolver picks one provider for every requirement so that
no resource ends up seeing two incompatible providers of the same package,
backtracking over alternative candidates when it has to. The result is the
delta of new wires; acting on it is up to the caller.

Key Features:
    - Generic capability/requirement model with package, bundle, host and
      custom namespaces
    - Uses constraint checking with depth-first backtracking over candidates
    - Fragments merged into their hosts while resolving
    - Incremental resolution against already resolved wirings, including
      dynamic imports
    - Optional resources that are dropped, rather than failing the resolve,
      when they cannot be wired
    - Cooperative cancellation and optional thread pool parallelism

Basic Usage:
    >>> from capwire.domain import Resource
    >>> from capwire.registry import CapabilityRegistry, RegistryResolveContext
    >>> from capwire.resolver import Resolver
    >>>
    >>> registry = CapabilityRegistry()
    >>> system = registry.register(Resource("system"))
    >>> system.provide("osgi.ee", {"osgi.ee": "JavaSE", "version": (1, 7)})
    >>> app = registry.register(Resource("app"))
    >>> app.require("osgi.ee", lambda c: c.attributes["version"] >= (1, 6))
    >>>
    >>> wires = Resolver().resolve(RegistryResolveContext(registry, mandatory=[app]))
    >>> wires[app]
    [[app] osgi.ee() -> [system] osgi.ee=JavaSE]

The library consists of several core modules:
    - domain: Resources, capabilities, requirements, wires and wirings
    - namespaces: Namespace vocabulary and per-namespace behaviour
    - context: The abstract resolve context the resolver consumes
    - registry: An in-memory resolve context
    - resolver: Resolution entry points
    - errors: Resolution failures
"""

import logging

logging.getLogger(__name__).addHandler(logging.NullHandler())
