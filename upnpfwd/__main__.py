"""Allow ``python -m upnpfwd``."""

from upnpfwd.cli import main

if __name__ == "__main__":
    main()
