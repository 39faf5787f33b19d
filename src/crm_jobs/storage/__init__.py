"""SQLite persistence shared by the job store and usage ledger."""
