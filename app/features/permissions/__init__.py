"""
Workspace permission engine.

Answers "may this user do this in this workspace" and "what level does
this user hold on this board or project" from membership roles, custom
roles, groups and per-resource overrides, and records every change to
those grants in an append-only audit log.
"""
