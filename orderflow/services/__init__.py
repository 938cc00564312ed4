"""
                        Services Module

Order lifecycle business logic plus the collaborators it talks to.
Each collaborator has a Mock (development) and a Real (production)
implementation selected by ENV_MODE.

Collaborators:
    - catalog: menu lookups for pricing snapshots
    - staff: role lookups for discounts, voids and riders
    - broadcast: kitchen / floor / rider events over Redis pub/sub

Engine:
    - engine.OrderEngine: transactional facade over lifecycle, firing,
      settlement, rider ledger and consistency checks
"""
