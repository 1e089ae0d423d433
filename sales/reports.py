import csv
import json
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.core.serializers.json import DjangoJSONEncoder
from django.http import HttpResponse
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.memo import request_memo
from common.permissions import RoleCapabilityPermission
from core.services import load_store_settings_snapshot
from sales.dashboard import get_dashboard_stats


class BaseReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dashboard.view"}

    def _parse_timezone(self, tz_name):
        if not tz_name:
            return timezone.get_current_timezone()
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError({"timezone": "Invalid IANA timezone."})

    def _csv_response(self, filename, rows):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = f'attachment; filename="{filename}"'

        if not rows:
            return response

        writer = csv.DictWriter(response, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return response

    def _memoised(self, request, key, callback):
        return request_memo(request, f"reports:{key}:{request.get_full_path()}", callback)


class DashboardStatsView(BaseReportView):
    def get(self, request):
        range_name = request.query_params.get("range", "today")
        date_from = request.query_params.get("from")
        date_to = request.query_params.get("to")
        tz = self._parse_timezone(request.query_params.get("timezone"))

        def run():
            return get_dashboard_stats(
                range_name,
                date_from,
                date_to,
                store_settings=load_store_settings_snapshot(request),
                tz=tz,
            )

        stats = self._memoised(request, "dashboard", run)
        if request.query_params.get("export") == "csv":
            return self._csv_response(f"revenue_{range_name}.csv", stats["revenue_by_period"])
        # Money stays exact on the wire: Decimals are rendered as strings.
        return Response(json.loads(json.dumps(stats, cls=DjangoJSONEncoder)))
