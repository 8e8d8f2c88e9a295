from rest_framework import viewsets, permissions, status
from rest_framework.decorators import action
from rest_framework.response import Response

from dispatch.dispatcher import order_created_from_payload
from dispatch.exceptions import DriverMismatch
from dispatch.models import AssignmentState

from .authentication import DriverPrincipal
from .engine import get_coordinator
from .serializers import (
    AssignmentSerializer,
    AvailabilityUpdateSerializer,
    CancelSerializer,
    DriverAvailabilitySerializer,
    LocationUpdateSerializer,
    NearbyQuerySerializer,
    OrderCreatedSerializer,
    OrderSerializer,
    RespondSerializer,
    StatusUpdateSerializer,
    nearby_orders_payload,
)


class IsDriver(permissions.BasePermission):
    message = "Driver endpoints require the X-Driver-Id header."

    def has_permission(self, request, view):
        return isinstance(request.user, DriverPrincipal)


def _acting_driver(request):
    return request.user.driver_id if isinstance(request.user, DriverPrincipal) else None


class DriverViewSet(viewsets.ViewSet):
    """
    The calling driver's own feed, position and availability.
    """
    permission_classes = [IsDriver]

    @action(detail=False, methods=['get'], url_path='nearby-orders')
    def nearby_orders(self, request):
        query = NearbyQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        nearby = get_coordinator().nearby_orders(
            request.user.driver_id,
            radius_miles=query.validated_data.get('radius'),
            limit=query.validated_data.get('limit'),
        )
        return Response(nearby_orders_payload(nearby))

    @action(detail=False, methods=['put'])
    def location(self, request):
        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        driver = get_coordinator().handle_driver_location(
            request.user.driver_id, data['lat'], data['lng'], at=data.get('timestamp')
        )
        return Response(DriverAvailabilitySerializer(driver).data)

    @action(detail=False, methods=['patch'])
    def availability(self, request):
        serializer = AvailabilityUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        driver = get_coordinator().handle_driver_availability(
            request.user.driver_id, serializer.validated_data['is_online']
        )
        return Response(DriverAvailabilitySerializer(driver).data)


class AssignmentViewSet(viewsets.ViewSet):
    """
    Directed offers. A driver only sees and answers their own.
    """
    permission_classes = [IsDriver]

    def retrieve(self, request, pk=None):
        assignment = get_coordinator().store.get_assignment(pk)
        if assignment.driver_id != request.user.driver_id:
            raise DriverMismatch(f"Assignment {pk} was not offered to driver {request.user.driver_id}")
        return Response(AssignmentSerializer(assignment).data)

    @action(detail=True, methods=['post'])
    def respond(self, request, pk=None):
        serializer = RespondSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        assignment = get_coordinator().respond(pk, request.user.driver_id, serializer.validated_data['decision'])
        result = "accepted" if assignment.state is AssignmentState.ACCEPTED else "declined"
        return Response({"result": result, "assignment": AssignmentSerializer(assignment).data})


class MarketplaceViewSet(viewsets.ViewSet):
    permission_classes = [IsDriver]

    @action(detail=True, methods=['post'])
    def claim(self, request, pk=None):
        order = get_coordinator().claim(pk, request.user.driver_id)
        return Response({"result": "claimed", "order": OrderSerializer(order).data})


class OrderViewSet(viewsets.ViewSet):
    """
    OrderCreated ingestion, order detail, status changes and cancellation.
    Status steps a driver makes are checked against the X-Driver-Id caller.
    """
    permission_classes = [permissions.AllowAny]

    def create(self, request):
        serializer = OrderCreatedSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = get_coordinator().handle_order_created(**order_created_from_payload(serializer.validated_data))
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        order = get_coordinator().store.get_order(pk)
        return Response(OrderSerializer(order).data)

    @action(detail=True, methods=['post'], url_path='status')
    def change_status(self, request, pk=None):
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = get_coordinator().update_status(
            pk, data['next_status'], actor_driver_id=_acting_driver(request), reason=data['reason']
        )
        return Response({"result": order.status.value, "order": OrderSerializer(order).data})

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = get_coordinator().cancel(pk, data['reason'], actor=_acting_driver(request), note=data['note'])
        result = "cancelled" if order.status.is_terminal else "requeued"
        return Response({"result": result, "order": OrderSerializer(order).data})
