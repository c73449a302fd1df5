"""
Parameter Optimizer

Genetic algorithm over WeightVector individuals. An individual is fitter when
the weighted distance it assigns to the system's match agrees with the one it
assigns to the user's correction, i.e. when the metric would not have
preferred the system's answer over what the user actually picked.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from chromalearn.config import config
from chromalearn.services.colors.matching import WeightVector, distance_components
from chromalearn.utils.metrics import get_metrics
from .feedback import FeedbackEntry
from .knowledge_base import KnowledgeBase

FITNESS_EPSILON = 0.001

_FIELDS = WeightVector.field_names()
_LOWER = np.array([WeightVector.BOUNDS[name][0] for name in _FIELDS])
_UPPER = np.array([WeightVector.BOUNDS[name][1] for name in _FIELDS])


@dataclass
class OptimizationResult:
    """Outcome of one optimizer run."""
    success: bool
    parameters: Optional[WeightVector] = None
    fitness: Optional[float] = None
    average_error: Optional[float] = None
    generations: int = 0
    history: List[float] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "parameters": self.parameters.to_dict() if self.parameters else None,
            "fitness": self.fitness,
            "averageError": self.average_error,
            "generations": self.generations,
            "history": list(self.history),
            "error": self.error,
        }


def component_differences(entries: Sequence[FeedbackEntry]) -> np.ndarray:
    """
    Per-entry difference of distance components, system match minus user correction.

    Weighted distances are linear in the weights, so for weights ``w`` the
    per-entry error is ``|D @ w|``.
    """
    rows = []
    for entry in entries:
        original = entry.original_sample
        system_components = distance_components(original, entry.system_match.sample)
        user_components = distance_components(original, entry.user_correction.sample)
        rows.append(system_components - user_components)
    return np.array(rows, dtype=np.float64).reshape(-1, len(_FIELDS))


class GeneticOptimizer:
    """Evolves distance weights against accumulated feedback."""

    def __init__(self,
                 population_size: int = None,
                 generations: int = None,
                 mutation_rate: float = None,
                 elitism: int = None,
                 tournament_size: int = None,
                 min_feedback: int = None,
                 rng_seed: Optional[int] = None):
        self.population_size = population_size or config.GA_POPULATION_SIZE
        self.generations = generations or config.GA_GENERATIONS
        self.mutation_rate = config.GA_MUTATION_RATE if mutation_rate is None else mutation_rate
        self.elitism = config.GA_ELITISM if elitism is None else elitism
        self.tournament_size = tournament_size or config.GA_TOURNAMENT_SIZE
        self.min_feedback = config.GA_MIN_FEEDBACK if min_feedback is None else min_feedback
        self._rng = np.random.default_rng(rng_seed)

    def average_errors(self, differences: np.ndarray, population: np.ndarray) -> np.ndarray:
        """Mean absolute distance discrepancy for each individual, shape (P,)."""
        return np.mean(np.abs(differences @ population.T), axis=0)

    def fitness(self, differences: np.ndarray, population: np.ndarray) -> np.ndarray:
        return 1.0 / (self.average_errors(differences, population) + FITNESS_EPSILON)

    def _initial_population(self, seed: WeightVector) -> np.ndarray:
        population = self._rng.uniform(_LOWER, _UPPER, size=(self.population_size, len(_FIELDS)))
        population[0] = seed.clamped().as_array()
        return population

    def _tournament(self, population: np.ndarray, fitness: np.ndarray) -> np.ndarray:
        size = min(self.tournament_size, len(population))
        candidates = self._rng.choice(len(population), size=size, replace=False)
        winner = candidates[np.argmax(fitness[candidates])]
        return population[winner]

    def _crossover(self, parent1: np.ndarray, parent2: np.ndarray) -> np.ndarray:
        take_first = self._rng.random(len(parent1)) < 0.5
        return np.where(take_first, parent1, parent2)

    def _mutate(self, child: np.ndarray) -> np.ndarray:
        mutate = self._rng.random(len(child)) < self.mutation_rate
        if np.any(mutate):
            child = child.copy()
            child[mutate] = self._rng.uniform(_LOWER[mutate], _UPPER[mutate])
        return child

    def _next_generation(self, population: np.ndarray, fitness: np.ndarray) -> np.ndarray:
        ranked = np.argsort(-fitness, kind="stable")
        elite_count = min(self.elitism, len(population))
        offspring = [population[i].copy() for i in ranked[:elite_count]]

        while len(offspring) < self.population_size:
            parent1 = self._tournament(population, fitness)
            parent2 = self._tournament(population, fitness)
            offspring.append(self._mutate(self._crossover(parent1, parent2)))

        return np.array(offspring)

    def optimize(self, entries: Sequence[FeedbackEntry],
                 knowledge_base: Optional[KnowledgeBase] = None) -> OptimizationResult:
        """
        Evolve weights against feedback entries.

        The best individual seen in any generation wins and, when a knowledge
        base is given, is written into ``knowledge_base.parameters``.

        Returns:
            OptimizationResult; ``success`` is False with ``error="insufficient data"``
            when fewer than the minimum number of entries are supplied
        """
        if len(entries) < self.min_feedback:
            logger.info(f"Skipping optimization: {len(entries)} feedback entries, need {self.min_feedback}")
            return OptimizationResult(success=False, error="insufficient data")

        start_time = time.time()
        differences = component_differences(entries)
        seed = knowledge_base.parameters if knowledge_base is not None else WeightVector()
        population = self._initial_population(seed)

        best_individual = None
        best_fitness = -np.inf
        history = []

        for generation in range(self.generations + 1):
            fitness = self.fitness(differences, population)
            leader = int(np.argmax(fitness))
            if fitness[leader] > best_fitness:
                best_fitness = float(fitness[leader])
                best_individual = population[leader].copy()
            history.append(best_fitness)

            # Last pass only scores the final generation
            if generation < self.generations:
                population = self._next_generation(population, fitness)

        if best_individual is None:
            return OptimizationResult(success=False, generations=self.generations, error="no individual evaluated")

        parameters = WeightVector.from_array(np.clip(best_individual, _LOWER, _UPPER))
        average_error = float(self.average_errors(differences, parameters.as_array()[None, :])[0])

        if knowledge_base is not None:
            knowledge_base.parameters = parameters

        duration_ms = (time.time() - start_time) * 1000
        metrics = get_metrics()
        metrics.increment_counter("optimizer_runs_total")
        metrics.record_timing("optimization", duration_ms)
        logger.bind(entries=len(entries), fitness=best_fitness).info(
            f"Optimized weights in {duration_ms:.1f}ms, average error {average_error:.4f}"
        )

        return OptimizationResult(
            success=True,
            parameters=parameters,
            fitness=best_fitness,
            average_error=average_error,
            generations=self.generations,
            history=history,
        )


def optimize_parameters(entries: Sequence[FeedbackEntry],
                        knowledge_base: Optional[KnowledgeBase] = None,
                        rng_seed: Optional[int] = None) -> OptimizationResult:
    """Run the optimizer with configured settings."""
    return GeneticOptimizer(rng_seed=rng_seed).optimize(entries, knowledge_base)
