# GoClaw Bid Selection
# Drop blacklisted providers, then cheapest first. Ties keep arrival order.

import logging

log = logging.getLogger("goclaw")


def rank_bids(bids, blacklist=None, excluded=None):
    """Return the bids eligible for a lease, best first.

    `blacklist` is anything with blacklisted_providers(); `excluded` is an
    optional extra set of provider addresses to skip. sorted() is stable and
    bids arrive in order, so equal prices keep first-received-wins.
    """
    skip = set(excluded or ())
    if blacklist is not None:
        skip |= blacklist.blacklisted_providers()

    eligible = []
    for bid in bids:
        if bid.provider in skip:
            log.info("Skipping blacklisted provider %s", bid.provider)
            continue
        eligible.append(bid)

    if len(eligible) != len(bids):
        log.info("Filtered out %d blacklisted bid(s)", len(bids) - len(eligible))
    return sorted(eligible, key=lambda b: (b.price, b.order))


def select_bid(bids, blacklist=None):
    ranked = rank_bids(bids, blacklist)
    return ranked[0] if ranked else None
