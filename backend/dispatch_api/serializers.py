from rest_framework import serializers

from dispatch.models import CancellationReason, Decision
from orders.models import OrderStatus


class EnumValueField(serializers.Field):
    def __init__(self, **kwargs):
        kwargs["read_only"] = True
        super().__init__(**kwargs)

    def to_representation(self, value):
        return value.value if value is not None else None


def _latlng(value):
    if value is None:
        return None
    return {"lat": value[0], "lng": value[1]}


# --- output ---

class LocationSerializer(serializers.Serializer):
    lat = serializers.FloatField()
    lng = serializers.FloatField()
    address = serializers.CharField()


class DropoffTargetSerializer(serializers.Serializer):
    retailer = serializers.CharField()
    store_id = serializers.CharField(allow_null=True)
    location = LocationSerializer(allow_null=True)


class StatusChangeSerializer(serializers.Serializer):
    previous = EnumValueField()
    new = EnumValueField()
    at = serializers.DateTimeField()
    reason = serializers.CharField()
    actor = serializers.CharField(allow_null=True)


class OrderSerializer(serializers.Serializer):
    id = serializers.CharField()
    status = EnumValueField()
    pickup = LocationSerializer()
    dropoff = DropoffTargetSerializer()
    estimated_earnings = serializers.DecimalField(max_digits=12, decimal_places=2)
    created_at = serializers.DateTimeField()
    bound_driver_id = serializers.CharField(allow_null=True)
    active_assignment_id = serializers.CharField(allow_null=True)
    excluded_driver_ids = serializers.SerializerMethodField()
    marketplace_visible = serializers.BooleanField()
    reassignment_count = serializers.IntegerField()
    escalated = serializers.BooleanField()
    cancellation_reason = serializers.CharField(allow_null=True)
    status_history = StatusChangeSerializer(many=True)

    def get_excluded_driver_ids(self, order):
        return sorted(order.excluded_driver_ids)


class AssignmentSerializer(serializers.Serializer):
    id = serializers.CharField()
    order_id = serializers.CharField()
    driver_id = serializers.CharField()
    state = EnumValueField()
    offered_at = serializers.DateTimeField()
    expires_at = serializers.DateTimeField()
    responded_at = serializers.DateTimeField(allow_null=True)
    resolved_at = serializers.DateTimeField(allow_null=True)
    attempt = serializers.IntegerField()


class DriverAvailabilitySerializer(serializers.Serializer):
    driver_id = serializers.CharField()
    is_online = serializers.BooleanField()
    location = serializers.SerializerMethodField()
    location_at = serializers.DateTimeField(allow_null=True)
    bound_order_id = serializers.CharField(allow_null=True)

    def get_location(self, driver):
        return _latlng(driver.location)


class ListingSerializer(serializers.Serializer):
    """
    One marketplace entry. Needs the ClusterResult in context["clustering"].
    """
    order = OrderSerializer()
    distance_miles = serializers.FloatField()
    age_seconds = serializers.FloatField()
    priority_score = serializers.FloatField()
    is_high_priority = serializers.BooleanField()
    is_closeby = serializers.SerializerMethodField()
    cluster_key = serializers.SerializerMethodField()

    def get_is_closeby(self, listing):
        return listing.order.id in self.context["clustering"].closeby_order_ids

    def get_cluster_key(self, listing):
        cluster = self.context["clustering"].cluster_for(listing.order.id)
        return cluster.key if cluster else None


class ClusterSerializer(serializers.Serializer):
    key = serializers.CharField()
    centroid = serializers.SerializerMethodField()
    order_ids = serializers.ListField(child=serializers.CharField())
    member_count = serializers.IntegerField()
    total_earnings = serializers.DecimalField(max_digits=12, decimal_places=2)
    distance_miles = serializers.FloatField(allow_null=True)
    is_best_opportunity = serializers.BooleanField()
    is_multi_stop = serializers.BooleanField()

    def get_centroid(self, cluster):
        return _latlng(cluster.centroid)


def nearby_orders_payload(nearby):
    context = {"clustering": nearby.clustering}
    return {
        "orders": ListingSerializer(nearby.listings, many=True, context=context).data,
        "clusters": ClusterSerializer(nearby.clustering.clusters, many=True).data,
        "summary": nearby.summary,
    }


# --- input ---

class NearbyQuerySerializer(serializers.Serializer):
    radius = serializers.FloatField(required=False, min_value=0.01, max_value=100)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100)


class LocationUpdateSerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)
    timestamp = serializers.DateTimeField(required=False)


class AvailabilityUpdateSerializer(serializers.Serializer):
    is_online = serializers.BooleanField()


class RespondSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=[d.value for d in Decision])


class StatusUpdateSerializer(serializers.Serializer):
    nextStatus = serializers.ChoiceField(source="next_status", choices=[s.value for s in OrderStatus])
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class CancelSerializer(serializers.Serializer):
    reason = serializers.ChoiceField(
        choices=[r.value for r in CancellationReason],
        default=CancellationReason.CUSTOMER_CANCELLED.value,
    )
    note = serializers.CharField(required=False, allow_blank=True, default="")


class PickupInputSerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)
    address = serializers.CharField(required=False, allow_blank=True, default="")


class DropoffInputSerializer(serializers.Serializer):
    retailer = serializers.CharField()
    store_id = serializers.CharField(required=False, allow_null=True, default=None)
    lat = serializers.FloatField(required=False, allow_null=True, default=None, min_value=-90, max_value=90)
    lng = serializers.FloatField(required=False, allow_null=True, default=None, min_value=-180, max_value=180)
    address = serializers.CharField(required=False, allow_blank=True, default="")


class OrderCreatedSerializer(serializers.Serializer):
    order_id = serializers.CharField(max_length=64)
    pickup = PickupInputSerializer()
    dropoff = DropoffInputSerializer()
    estimated_earnings = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
