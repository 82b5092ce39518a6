# Infrastructure - backbone, persistence and shared helpers
