"""External collaborators — ledger, evidence storage, rates and publishing."""
