"""
Pagination package.

Two deliberately separate strategies:
- offset: page numbers and totals, weak under concurrent mutation;
- cursor: keyset walk with a stable forward iteration guarantee.
"""
