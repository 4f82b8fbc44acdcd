from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Territory
from .resolver import TerritoryResolver


@receiver(post_save, sender=Territory)
@receiver(post_delete, sender=Territory)
def invalidate_territory_snapshot(sender, instance, **kwargs):
    TerritoryResolver.invalidate()
