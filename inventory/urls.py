"""
URL routing for inventory API endpoints.
"""
from django.urls import path
from . import views

app_name = 'inventory'

urlpatterns = [
    # Products
    path('products/', views.ProductListView.as_view(), name='product-list'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
    path('products/<int:pk>/reconcile/', views.ProductReconcileView.as_view(), name='product-reconcile'),
    path('inventory/summary/', views.InventorySummaryView.as_view(), name='inventory-summary'),

    # Bins
    path('bins/', views.BinListCreateView.as_view(), name='bin-list'),
    path('bins/<int:pk>/', views.BinDetailView.as_view(), name='bin-detail'),
    path('bins/<int:pk>/history/', views.BinHistoryView.as_view(), name='bin-history'),
    path('bins/<int:pk>/add-stock/', views.BinAddStockView.as_view(), name='bin-add-stock'),
    path('bins/<int:pk>/remove-stock/', views.BinRemoveStockView.as_view(), name='bin-remove-stock'),
    path('bins/<int:from_pk>/transfer/<int:to_pk>/', views.BinTransferView.as_view(), name='bin-transfer'),
]
