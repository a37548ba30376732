"""Run the gateway: python -m obd_link"""

from .server import main

main()
