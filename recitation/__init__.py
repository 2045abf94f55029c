"""recitation package.

Live recitation-review tickets and the per-student Personal Mushaf ledger.
"""
