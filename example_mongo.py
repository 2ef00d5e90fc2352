from datetime import datetime, timedelta, timezone

from fair_marketplace import FairMarketplace
from fair_marketplace.pricing.fluctuation import FixedChange

market = FairMarketplace(db_config="mongodb://127.0.0.1:27017/marketplace")

success, error = market.connection()  # => to check the connectivity
if not success:
    print(error)
    exit(1)

market.setup_rates({"PHP": "0.0178", "IDR": "0.0000635", "MYR": "0.2247", "USD": "1"})
market.seed_listings(5000, seller_count=50)

# Strict rotation; refused above the configured category-size ceiling
result = market.search("FPS", "true-round-robin", page=2, page_size=20)
print(result.pagination)

# Listings between 500 and 2000 PHP, whatever currency they were listed in
in_range = market.search_price_range("500", "2000", "PHP", category="FPS")
print(in_range.pagination.total_count)

# Reprice only listings converted more than an hour ago, 1000 at a time
market.update_rates(FixedChange("0.01"))
cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
preview = market.check_recalculate(older_than=cutoff, limit=1000)
print(preview.total_available, preview.records_to_process, preview.missing_rates)
print(market.recalculate(older_than=cutoff, limit=1000))

print(market.seller_stats("FPS").head())
market.close()
