"""SQLite persistence shared by the coordinator components."""
