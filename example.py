from fair_marketplace import FairMarketplace, __version__

print(__version__)  # 0.1.0

# Default Usage (local SQLite file next to the package)
market = FairMarketplace()

# Exchange rates must exist before prices can be converted
market.setup_rates()
print(market.to_peg("1000", "PHP"))  # => Decimal('17.8000')

# Sample data: 1000 listings from 20 sellers
market.seed_listings(1000, seller_count=20, seed=7)

# One fair page per strategy
page = market.search("RPG", "hash-round-robin", page=1, page_size=10)
print(page.label, page.pagination)
for listing in page.listings:
    print(listing.seller_id, listing.title, listing.peg_price)

page = market.search("RPG", "quota", max_per_seller=2)
print(page.seller_counts())

# How evenly each strategy spreads sellers over page one
for row in market.compare_strategies("RPG"):
    print(row.label, row.unique_sellers, round(row.fairness_score, 2))

# Cheapest listings, shown in Malaysian ringgit
cheapest = market.list_by_price("MYR", page_size=5)
print(list(zip([l.title for l in cheapest.listings], cheapest.display_prices)))

# Move the rates, preview the repricing, then run it
market.update_rates()
print(market.check_recalculate().estimated_duration)
print(market.recalculate())
