"""Submission gate.

Static checks over raw module text: contract presence, anchor binding, capability
denylist and size ceilings. All checks run; their issues are unioned.
"""
