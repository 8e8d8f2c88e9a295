"""
End-to-end dispatch simulation on a manual clock.

Scatters drivers and return-pickup orders around a city center, then ticks
time forward: drivers accept, decline or ignore their directed offers, idle
drivers claim from the marketplace, and expiry timers requeue what nobody
answered. Writes one row per order to dispatch_results.csv.

Usage:
    python scripts/run_dispatch_simulation.py --orders 30 --drivers 12 --seed 7
"""

import argparse
import csv
import logging
import os
import random
import sys

# run from a checkout without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dispatch.clock import ManualClock
from dispatch.dispatcher import DispatchCoordinator
from dispatch.exceptions import DispatchError
from dispatch.models import AssignmentState, Decision
from dispatch.notifications import InMemoryPublisher, NotificationKind
from dispatch.policy import DispatchPolicy
from orders.models import DropoffTarget, Location, OrderStatus

# Roughly downtown Denver
BASE_LAT = 39.7392
BASE_LNG = -104.9903

RETAILERS = ["Target", "Best Buy", "Nordstrom", "Walmart", "REI"]


def scatter(spread: float):
    return (
        BASE_LAT + (random.random() - 0.5) * spread,
        BASE_LNG + (random.random() - 0.5) * spread,
    )


def seed_drivers(coordinator: DispatchCoordinator, count: int):
    driver_ids = []
    for i in range(count):
        driver_id = f"DRV-{str(i + 1).zfill(3)}"
        lat, lng = scatter(0.15)
        coordinator.handle_driver_location(driver_id, lat, lng)
        # 80% chance of being online
        coordinator.handle_driver_availability(driver_id, random.random() < 0.8)
        driver_ids.append(driver_id)
    return driver_ids


def create_orders(coordinator: DispatchCoordinator, count: int):
    order_ids = []
    for i in range(count):
        order_id = f"RET-{str(i + 1).zfill(4)}"
        lat, lng = scatter(0.08)
        coordinator.handle_order_created(
            order_id,
            pickup=Location(lat, lng, f"{random.randint(100, 9999)} Main St"),
            dropoff=DropoffTarget(retailer=random.choice(RETAILERS)),
            estimated_earnings=round(random.uniform(8, 25), 2),
        )
        order_ids.append(order_id)
    return order_ids


def tick(coordinator: DispatchCoordinator, driver_ids, accept_rate: float, decline_rate: float, claim_rate: float):
    # 1. Drivers answer their pending offers (or let them run out)
    for assignment in coordinator.store.pending_assignments():
        roll = random.random()
        try:
            if roll < accept_rate:
                coordinator.respond(assignment.id, assignment.driver_id, Decision.ACCEPT)
            elif roll < accept_rate + decline_rate:
                coordinator.respond(assignment.id, assignment.driver_id, Decision.DECLINE)
        except DispatchError as exc:
            # lost a race or the offer ran out between snapshot and answer
            logging.getLogger("simulation").debug("respond rejected: %s", exc)

    # 2. Idle drivers browse the marketplace and sometimes claim the top listing
    for driver_id in driver_ids:
        driver = coordinator.store.find_driver(driver_id)
        if driver is None or not driver.is_free or driver.location is None:
            continue
        if random.random() >= claim_rate:
            continue
        nearby = coordinator.nearby_orders(driver_id, radius_miles=5, limit=5)
        if not nearby.listings:
            continue
        try:
            coordinator.claim(nearby.listings[0].order.id, driver_id)
        except DispatchError as exc:
            logging.getLogger("simulation").debug("claim rejected: %s", exc)


def run_simulation(order_count: int, driver_count: int, rounds: int, seed: int):
    print("=== STARTING END-TO-END DISPATCH SIMULATION ===")
    random.seed(seed)

    clock = ManualClock()
    publisher = InMemoryPublisher()
    coordinator = DispatchCoordinator(
        policy=DispatchPolicy(offer_ttl_seconds=90, escalation_attempt_threshold=3),
        publisher=publisher,
        clock=clock,
    )

    driver_ids = seed_drivers(coordinator, driver_count)
    order_ids = create_orders(coordinator, order_count)
    print(f"Created {len(order_ids)} Orders and {len(driver_ids)} Drivers.\n")

    for round_index in range(rounds):
        tick(coordinator, driver_ids, accept_rate=0.35, decline_rate=0.25, claim_rate=0.2)
        clock.advance(30)
        expired = coordinator.expire_overdue()

        # Drivers who got an order finish it a little later and become free again
        for order in coordinator.store.list_orders(lambda o: o.status == OrderStatus.ASSIGNED):
            driver_id = order.bound_driver_id
            for next_status in (
                OrderStatus.ACCEPTED,
                OrderStatus.PICKED_UP,
                OrderStatus.EN_ROUTE_TO_STORE,
                OrderStatus.DROPPED_OFF,
                OrderStatus.COMPLETED,
            ):
                coordinator.update_status(order.id, next_status, actor_driver_id=driver_id)

        if expired:
            print(f"  Round {round_index + 1}: {expired} offer(s) expired")

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    output_path = os.path.join(base_dir, "dispatch_results.csv")

    completed = 0
    with open(output_path, "w", newline='') as file:
        writer = csv.writer(file)
        writer.writerow(["order_id", "status", "driver_id", "offers", "reassignments", "escalated"])
        for order_id in order_ids:
            order = coordinator.store.get_order(order_id)
            offers = coordinator.store.assignments_for_order(order_id)
            if order.status == OrderStatus.COMPLETED:
                completed += 1
            writer.writerow([
                order.id,
                order.status.value,
                order.bound_driver_id or "",
                len(offers),
                order.reassignment_count,
                order.escalated,
            ])

    all_offers = [a for order_id in order_ids for a in coordinator.store.assignments_for_order(order_id)]
    by_state = {state: sum(1 for a in all_offers if a.state is state) for state in AssignmentState}

    print("\n=== SIMULATION COMPLETE ===")
    print(f"Orders Completed: {completed} / {len(order_ids)}")
    print("Offers: " + ", ".join(f"{state.value}={count}" for state, count in by_state.items()))
    print(f"Escalations: {publisher.kinds().count(NotificationKind.ORDER_ESCALATED)}")
    print(f"Results written to '{output_path}'.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--orders", type=int, default=30)
    parser.add_argument("--drivers", type=int, default=12)
    parser.add_argument("--rounds", type=int, default=20)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_simulation(args.orders, args.drivers, args.rounds, args.seed)
