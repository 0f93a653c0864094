"""Browser-driven scraping of the vendor rental back-office."""
