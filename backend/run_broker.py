# run_broker.py
from campaign_broker.broker import main

if __name__ == "__main__":
    main()
