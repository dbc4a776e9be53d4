"""Command-line interface for pullcache."""
