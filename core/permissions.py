"""
Role checks for the fulfillment API.

Pickers and riders are users in the groups named by
``FULFILLMENT['PICKER_GROUP']`` and ``FULFILLMENT['RIDER_GROUP']``. Staff
users act as admins and pass every role check.
"""
from django.conf import settings
from rest_framework import permissions


def is_admin(user) -> bool:
    return bool(user and user.is_authenticated and user.is_staff)


def has_role(user, group_setting: str) -> bool:
    """True for staff, or for members of the group configured under ``group_setting``."""
    if not (user and user.is_authenticated):
        return False
    if user.is_staff:
        return True
    return user.groups.filter(name=settings.FULFILLMENT[group_setting]).exists()


def is_picker(user) -> bool:
    return has_role(user, 'PICKER_GROUP')


def is_rider(user) -> bool:
    return has_role(user, 'RIDER_GROUP')


class IsAdmin(permissions.BasePermission):
    message = 'Access denied. Admin role required.'

    def has_permission(self, request, view):
        return is_admin(request.user)


class IsPicker(permissions.BasePermission):
    message = 'Access denied. Picker role required.'

    def has_permission(self, request, view):
        return is_picker(request.user)


class IsRider(permissions.BasePermission):
    message = 'Access denied. Rider role required.'

    def has_permission(self, request, view):
        return is_rider(request.user)


class IsOrderCustomerOrStaff(permissions.BasePermission):
    """
    Customers may only act on their own orders.

    Pickers, riders and admins may act on any order.
    """
    message = 'Access denied. Order belongs to another customer.'

    def has_object_permission(self, request, view, obj):
        user = request.user
        if is_picker(user) or is_rider(user):
            return True
        return obj.customer == str(user.pk)


class IsAdminOrReadOnly(permissions.BasePermission):
    """Reads for any authenticated user, writes for admins."""

    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return bool(request.user and request.user.is_authenticated)
        return is_admin(request.user)
