import enum


class BatchStatus(str, enum.Enum):
    fermentation = "fermentation"
    aging = "aging"
    conditioning = "conditioning"
    completed = "completed"
    discarded = "discarded"


class ProductType(str, enum.Enum):
    cider = "cider"
    perry = "perry"
    brandy = "brandy"
    pommeau = "pommeau"
    juice = "juice"
    other = "other"


# Spirits and fortified products are never fermented in the cellar
NON_FERMENTING_PRODUCTS = frozenset({ProductType.brandy, ProductType.pommeau})


class FermentationStage(str, enum.Enum):
    not_started = "not_started"
    not_applicable = "not_applicable"
    early = "early"
    mid = "mid"
    approaching_dry = "approaching_dry"
    terminal = "terminal"
    unknown = "unknown"


ACTIVE_FERMENTATION_STAGES = frozenset({
    FermentationStage.early,
    FermentationStage.mid,
    FermentationStage.approaching_dry,
    FermentationStage.terminal,
})

DORMANT_FERMENTATION_STAGES = frozenset({
    FermentationStage.not_started,
    FermentationStage.unknown,
})


class VesselStatus(str, enum.Enum):
    available = "available"
    fermenting = "fermenting"
    aging = "aging"
    cleaning = "cleaning"
    maintenance = "maintenance"


class CompositionSourceType(str, enum.Enum):
    base_fruit = "base_fruit"
    juice_purchase = "juice_purchase"
    batch_transfer = "batch_transfer"


class MergeSourceType(str, enum.Enum):
    press_run = "press_run"
    juice_purchase = "juice_purchase"
    batch_transfer = "batch_transfer"


class FilterType(str, enum.Enum):
    coarse = "coarse"
    fine = "fine"
    sterile = "sterile"


class PackagingKind(str, enum.Enum):
    bottling = "bottling"
    kegging = "kegging"
    distillation = "distillation"


class RackOutcome(str, enum.Enum):
    rack_to_self = "rack_to_self"
    split = "split"
    partial_merge = "partial_merge"
    full_merge = "full_merge"
    move = "move"


class PressRunStatus(str, enum.Enum):
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
