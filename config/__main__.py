"""Command line interface for testing configuration loading"""
from . import settings_conf
from pathlib import Path

SECRET_KEYS = ('jwt_secret', 'exchange_api_key')

def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        if key in SECRET_KEYS and value:
            value = '********'
        print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# PostgreSQL connection URL
db_url = postgresql://postgres@localhost:5432/campus_market
# Shared with the session system; tokens are HS256 signed
jwt_secret = change-me
# Korea Eximbank key; leave empty to use the public endpoint
exchange_api_key =
# Daily exchange rate refresh
refresh_time = 03:00
refresh_timezone = Asia/Seoul
# Close the older websocket when a user reconnects
evict_superseded_connections = false
""")
    print(f"\nWrote {examples_dir / 'settings.conf.example'}")

if __name__ == "__main__":
    main()
