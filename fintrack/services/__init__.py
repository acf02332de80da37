"""Services package: local storage backends and cloud sync."""
