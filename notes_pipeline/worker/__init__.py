"""Queue consumer: job dispatch plus the retry / dead-letter state machine."""
