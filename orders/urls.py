"""
URL routing for order API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/stats/', views.OrderStatsView.as_view(), name='order-stats'),
    path('orders/<int:pk>/', views.OrderDetailView.as_view(), name='order-detail'),

    # Picking
    path('orders/picking/available/', views.PickingAvailableView.as_view(), name='picking-available'),
    path('orders/<int:pk>/accept-picking/', views.AcceptPickingView.as_view(), name='accept-picking'),
    path(
        'orders/<int:pk>/items/<int:index>/start-picking/',
        views.StartItemPickingView.as_view(),
        name='start-item-picking'
    ),
    path('orders/<int:pk>/items/<int:index>/picked/', views.ItemPickedView.as_view(), name='item-picked'),

    # Delivery
    path('orders/delivery/available/', views.DeliveryAvailableView.as_view(), name='delivery-available'),
    path('orders/<int:pk>/accept-delivery/', views.AcceptDeliveryView.as_view(), name='accept-delivery'),
    path('orders/<int:pk>/pickup/', views.PickupView.as_view(), name='pickup'),
    path('orders/<int:pk>/deliver/', views.DeliverView.as_view(), name='deliver'),

    # Cancellation and refunds
    path('orders/<int:pk>/cancel/', views.CancelOrderView.as_view(), name='cancel'),
    path('orders/<int:pk>/refund/', views.RefundOrderView.as_view(), name='refund'),
]
