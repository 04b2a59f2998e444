"""Event cache with stale-while-revalidate reads."""
