"""
Detection rules package.

Defines the grey-area detection rule model, the built-in catalog and the
engine that matches entity snapshots against it.

Modules of interest:
- models: Data classes for rules, conditions and matches.
- evaluator: Pure condition evaluation over entity snapshots.
- templates: Title/description placeholder rendering.
- catalog: Immutable, versioned rule catalog and the built-in rules.
- engine: Matching algorithm with hot-swappable catalog.
"""
