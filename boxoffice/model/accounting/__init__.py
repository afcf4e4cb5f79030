# model/accounting/__init__.py
import os
from ._legs import Leg, settlement_legs

BACKEND = os.getenv("ACCT_BACKEND", "pg").lower()  # 'tb' | 'pg'

if BACKEND == "tb":
    from ._tigerbeetle import create_accounts, post_settlement, balances
else:
    from ._postgres import create_accounts, post_settlement, balances


__all__ = [
  "create_accounts", "post_settlement", "balances",
  "Leg", "settlement_legs", "BACKEND",
]
