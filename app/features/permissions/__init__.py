"""
Permission management feature module.

Implements role-based access control: users belong to groups, groups hold
roles, roles hold permissions, and each permission is one action on one
module. The authorization service answers "can this user do this?" and every
change to the graph goes through the mutation gateway.
"""
