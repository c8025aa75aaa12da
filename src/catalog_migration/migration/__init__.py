"""Migration core: credit budget, ledger, paged fetching, bulk jobs and the batch dispatcher."""
