from src.engine.mechanics.rounding import round_half_up
from src.shared.config import WorldConfig


def stability_delta(food_surplus: float, energy_surplus: float, food_crisis: bool,
                    energy_crisis: bool, popularity_bias: float, config: WorldConfig) -> float:
    delta = 0.0
    if food_surplus > 0:
        delta += config.surplus_stability_bonus
    if energy_surplus > 0:
        delta += config.surplus_stability_bonus
    if food_crisis:
        delta -= config.food_crisis_penalty
    if energy_crisis:
        delta -= config.energy_crisis_penalty
    # Popular laws
    delta += round_half_up(popularity_bias)
    return delta


def clamp_stability(value: float) -> float:
    return max(0.0, min(100.0, value))
