"""Background calendar synchronization."""
