"""
External ledger mirror package.

Adapters push the payment timeline into a human-editable spreadsheet and
read finance edits back for reconciliation.
"""
