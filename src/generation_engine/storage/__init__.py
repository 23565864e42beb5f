"""SQLite persistence shared by the ledger and the task repository."""
