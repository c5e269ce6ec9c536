"""
KidsBank - Source Package

A family pocket-money bank: parents keep virtual accounts for their
children, weekly allowances are paid automatically, and children save
towards goals.

DESIGN PRINCIPLES:
1. Money is exact (two-place Decimals, never floats)
2. A missed allowance is paid once, never twice
3. Children only see their own money
4. Every change is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "KidsBank Team"
