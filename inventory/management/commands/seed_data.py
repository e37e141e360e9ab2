"""
Management command to seed the database with sample data.

Generates:
- Grocery products with stock counters at zero
- Warehouse bins across several zones
- Stock placed into bins through the ledger, so every unit has a movement
  record and product counters match bin contents
- The picker and rider auth groups

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from datetime import timedelta
from decimal import Decimal
from django.conf import settings
from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from core.exceptions import CapacityExceeded
from inventory import ledger
from inventory.models import Bin, BinMovement, BinStock, Product

SEED_ACTOR = 'seed'


class Command(BaseCommand):
    help = 'Seed the database with sample products, bins, and bin stock'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=200,
            help='Number of products to create (default: 200)',
        )
        parser.add_argument(
            '--bins',
            type=int,
            default=60,
            help='Number of bins to create (default: 60)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            self._create_role_groups()
            products = self._create_products(options['products'])
            bins = self._create_bins(options['bins'])
            self._stock_bins(products, bins)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _create_role_groups(self):
        for key in ('PICKER_GROUP', 'RIDER_GROUP'):
            group, created = Group.objects.get_or_create(name=settings.FULFILLMENT[key])
            if created:
                self.stdout.write(f'Created group {group.name}')

    def _clear_data(self):
        """Clear all existing data."""
        from orders.models import Order, OrderItem, OrderTimelineEntry

        OrderTimelineEntry.objects.all().delete()
        OrderItem.objects.all().delete()
        Order.objects.all().delete()
        BinMovement.objects.all().delete()
        BinStock.objects.all().delete()
        Bin.objects.all().delete()
        Product.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_products(self, count):
        """Create sample products with realistic data."""
        product_templates = {
            'DAI': ['Whole Milk 1L', 'Greek Yogurt', 'Paneer 200g', 'Salted Butter', 'Cheddar Slices'],
            'BAK': ['Brown Bread', 'Multigrain Bread', 'Croissant', 'Burger Buns', 'Rusk'],
            'FRU': ['Bananas 1kg', 'Apples 1kg', 'Pomegranate', 'Grapes 500g', 'Papaya'],
            'VEG': ['Tomatoes 1kg', 'Onions 1kg', 'Potatoes 1kg', 'Spinach Bunch', 'Carrots 500g'],
            'STA': ['Basmati Rice 5kg', 'Toor Dal 1kg', 'Wheat Flour 5kg', 'Sugar 1kg', 'Rock Salt'],
            'BEV': ['Green Tea', 'Instant Coffee', 'Orange Juice 1L', 'Coconut Water', 'Soda 750ml'],
            'SNK': ['Potato Chips', 'Salted Peanuts', 'Digestive Biscuits', 'Dark Chocolate', 'Trail Mix'],
        }

        brands = [
            'Fresh Farms', 'Daily Harvest', 'Green Valley', 'Nature\'s Best',
            'Urban Pantry', 'Golden Fields', 'Pure Origin', 'Home Choice'
        ]

        products = []
        existing_skus = set(Product.objects.values_list('sku', flat=True))

        self.stdout.write(f'Creating {count} products...')

        for i in range(count):
            prefix = random.choice(list(product_templates))
            sku = f"{prefix}-{i + 1:05d}"
            if sku in existing_skus:
                continue
            existing_skus.add(sku)

            products.append(Product(
                sku=sku,
                name=f"{random.choice(brands)} {random.choice(product_templates[prefix])}",
                selling_price=Decimal(str(round(random.uniform(10, 600), 2))),
                min_stock_level=random.randint(5, 20),
                is_active=random.random() > 0.05  # 95% active
            ))

        # Bulk create for efficiency
        Product.objects.bulk_create(products, ignore_conflicts=True)

        products = list(Product.objects.filter(is_active=True))
        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} active products'))
        return products

    def _create_bins(self, count):
        """Create bins laid out as zone / aisle / shelf / level."""
        zones = ['A', 'B', 'C', 'D']
        bins = []
        for i in range(count):
            zone = zones[i % len(zones)]
            aisle = f"{i // 12 + 1:02d}"
            shelf = f"S{i % 3 + 1}"
            level = i % 4 + 1
            bins.append(Bin(
                bin_code=f"{zone}-{aisle}-{shelf}-{level}-{i + 1:04d}",
                bin_type=Bin.BinType.PICKING if zone in ('A', 'B') else Bin.BinType.STORAGE,
                zone=zone,
                aisle=aisle,
                shelf=shelf,
                level=level,
                max_items=random.choice([100, 200, 500])
            ))

        Bin.objects.bulk_create(bins, ignore_conflicts=True)

        bins = list(Bin.objects.filter(is_active=True))
        self.stdout.write(self.style.SUCCESS(f'Created {len(bins)} bins'))
        return bins

    def _stock_bins(self, products, bins):
        """Place each product into one to three bins through the ledger."""
        if not bins:
            return
        today = timezone.now().date()
        placed = 0

        self.stdout.write(f'Stocking {len(bins)} bins...')

        for product in products:
            for bin_obj in random.sample(bins, k=min(len(bins), random.randint(1, 3))):
                try:
                    ledger.add_stock(
                        bin_obj.pk,
                        product.pk,
                        random.randint(5, 40),
                        SEED_ACTOR,
                        batch_number=f"B{today:%y%m}-{random.randint(1, 99):02d}",
                        expiry_date=today + timedelta(days=random.randint(3, 180)),
                        reason='Initial stock'
                    )
                    placed += 1
                except CapacityExceeded:
                    # Bin is full; the product still lands in its other bins.
                    continue

        self.stdout.write(self.style.SUCCESS(f'Placed {placed} stock entries'))
