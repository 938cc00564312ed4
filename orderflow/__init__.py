"""
                Orderflow

Order lifecycle and settlement transaction engine for restaurant
operations: dine-in, takeaway and delivery from creation through payment,
with table locking, guided settlement and a rider cash-float ledger.

Author: Khalil_Bannouri
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Khalil_Bannouri"
