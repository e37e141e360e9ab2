"""
Inventory API Views.

Implements:
- Read access to product stock counters and reconciliation
- Bin provisioning and stock ledger operations (add, remove, transfer)
- Bin movement history
"""
import logging

from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import FulfillmentError, actor_id, error_response, server_error_response
from core.permissions import IsAdminOrReadOnly, IsPicker
from core.rate_limiting import rate_limit
from . import ledger, services
from .models import Bin, BinMovement, Product
from .serializers import (
    AddStockSerializer,
    BinDetailSerializer,
    BinMovementSerializer,
    BinSerializer,
    ProductSerializer,
    RemoveStockSerializer,
    TransferSerializer,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Product Views
# =============================================================================

class ProductListView(generics.ListAPIView):
    """
    GET: List products with stock counters

    Query Parameters:
        - low_stock: Show only low stock products (true/false)
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        if self.request.query_params.get('low_stock', '').lower() == 'true':
            return services.low_stock_products()
        return Product.objects.filter(is_active=True).order_by('name')


class ProductDetailView(generics.RetrieveAPIView):
    queryset = Product.objects.all()
    serializer_class = ProductSerializer


class ProductReconcileView(APIView):
    """
    GET: Compare a product's counters with the sum of its bin stock.
    """

    def get(self, request, pk):
        product = generics.get_object_or_404(Product, pk=pk)
        return Response(services.reconcile(product))


class InventorySummaryView(APIView):
    """
    GET: Stock totals with the list of low stock products.
    """

    def get(self, request):
        summary = services.inventory_summary()
        summary['low_stock_products'] = ProductSerializer(
            services.low_stock_products()[:50], many=True
        ).data
        return Response(summary)


# =============================================================================
# Bin Views
# =============================================================================

class BinListCreateView(generics.ListCreateAPIView):
    """
    GET: List active bins
    POST: Provision a new bin (admin only)

    Query Parameters (GET):
        - zone: Filter by zone
        - bin_type: Filter by bin type
    """
    serializer_class = BinSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        queryset = Bin.objects.filter(is_active=True)

        zone = self.request.query_params.get('zone')
        if zone:
            queryset = queryset.filter(zone=zone)

        bin_type = self.request.query_params.get('bin_type')
        if bin_type in Bin.BinType.values:
            queryset = queryset.filter(bin_type=bin_type)

        return queryset.order_by('zone', 'aisle', 'shelf', 'level')


class BinDetailView(generics.RetrieveAPIView):
    serializer_class = BinDetailSerializer

    def get_queryset(self):
        return Bin.objects.prefetch_related('stock__product')


class BinHistoryView(generics.ListAPIView):
    """
    GET: Movement history of a bin, newest first.

    Query Parameters:
        - action: Filter by movement action
    """
    serializer_class = BinMovementSerializer

    def get_queryset(self):
        queryset = BinMovement.objects.filter(bin_id=self.kwargs['pk']).select_related(
            'product', 'order'
        )
        action = self.request.query_params.get('action')
        if action in BinMovement.Action.values:
            queryset = queryset.filter(action=action)
        return queryset.order_by('-timestamp', '-id')


class LedgerOperationView(APIView):
    """
    Base for POST endpoints performing one stock ledger operation.

    Subclasses set ``input_serializer_class`` and implement ``perform``,
    which returns the bin whose state is sent back.
    """
    permission_classes = [IsPicker]
    input_serializer_class = None

    @rate_limit('bin_ledger')
    def post(self, request, **kwargs):
        serializer = self.input_serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            bin_obj = self.perform(actor_id(request), serializer.validated_data, **kwargs)
        except FulfillmentError as e:
            logger.warning(f"{type(self).__name__} rejected: {e}")
            return error_response(e)
        except Exception as e:
            return server_error_response(e)

        bin_obj = Bin.objects.prefetch_related('stock__product').get(pk=bin_obj.pk)
        return Response(BinDetailSerializer(bin_obj).data, status=status.HTTP_200_OK)


class BinAddStockView(LedgerOperationView):
    input_serializer_class = AddStockSerializer

    def perform(self, actor, data, pk):
        movement = ledger.add_stock(
            pk,
            data['product_id'],
            data['quantity'],
            actor,
            batch_number=data['batch_number'],
            expiry_date=data['expiry_date']
        )
        return movement.bin


class BinRemoveStockView(LedgerOperationView):
    input_serializer_class = RemoveStockSerializer

    def perform(self, actor, data, pk):
        movement = ledger.remove_stock(
            pk,
            data['product_id'],
            data['quantity'],
            actor,
            reason=data['reason']
        )
        return movement.bin


class BinTransferView(LedgerOperationView):
    input_serializer_class = TransferSerializer

    def perform(self, actor, data, from_pk, to_pk):
        outgoing, _ = ledger.transfer(
            from_pk,
            to_pk,
            data['product_id'],
            data['quantity'],
            actor,
            reason=data['reason']
        )
        return outgoing.bin
