"""Change propagation — the session-based, reversible sync pipeline.

This package provides:
- Extraction: turn source repo changes into a change set (paths or a patch)
- Policy: exclude and critical-path rules, binary classification
- Probing: non-mutating dry runs against each target
- Sessions: timestamped backup ledgers that make a whole run revertible
- Apply/Revert: the mutating engines and their per-item run reports
"""
