"""Record building and derived-value computation."""
