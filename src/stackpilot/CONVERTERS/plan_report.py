# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Plain-text reports for deployment plans, plan results and product deployments.
"""
from typing import Optional

from jinja2 import Template

from ..MODELS.deployment_plan import DeploymentPlan, PlanResult
from ..MODELS.product_deployment import ProductDeployment

PLAN_TEMPLATE = """\
Plan for stack {{ plan.stack_name }} ({{ plan.steps | length }} steps)
{% for step in plan.steps %}
{{ "%3d" | format(loop.index) }}. {{ "%-8s" | format(step.kind.value) }} {{ step.name }}
{%- if step.kind.value == 'service' %} image={{ step.spec.image }}
{%- if step.spec.depends_on %} after={{ step.spec.depends_on | join(',') }}{% endif %}
{%- if step.spec.ports %} ports={% for p in step.spec.ports %}{% if p.host %}{{ p.host }}:{% endif %}{{ p.container }}/{{ p.protocol }}{% if not loop.last %},{% endif %}{% endfor %}{% endif %}
{%- else %} driver={{ step.spec.driver }}{% endif %}
{%- endfor %}
{% if show_variables and plan.variables %}
Variables:
{% for name, value in plan.variables | dictsort %}
  {{ name }}={{ value }}
{%- endfor %}
{% endif %}"""

RESULT_TEMPLATE = """\
Result for stack {{ result.stack_name }}: {{ 'succeeded' if result.succeeded else 'failed' }}
{% for r in result.results %}
  {{ "%-9s" | format(r.outcome.value) }} {{ r.step.kind.value }} {{ r.step.name }}
{%- if r.attempts > 1 %} (attempts: {{ r.attempts }}){% endif %}
{%- if r.error %} [{{ r.failure_kind.value if r.failure_kind else 'error' }}] {{ r.error }}{% endif %}
{%- endfor %}
"""

DEPLOYMENT_TEMPLATE = """\
{{ d.product_name }} {{ d.product_version }} in {{ d.environment_id }}: {{ d.status.value }}
{%- if d.previous_version %} (previous: {{ d.previous_version }}){% endif %}
{% for s in d.stacks_in_deploy_order() %}
  [{{ s.order }}] {{ "%-24s" | format(s.stack_name) }} {{ s.status.value }}
{%- if s.is_new_in_upgrade %} (new){% endif %}
{%- if s.is_retired %} (retired){% endif %}
{%- if s.error_message %}: {{ s.error_message }}{% endif %}
{%- endfor %}
{% if d.error_message %}
{{ d.error_message }}
{% endif %}"""


class PlanReport:
    """
    Renders plans and deployments for the command line.
    """

    def __init__(self):
        self.plan_template = Template(PLAN_TEMPLATE)
        self.result_template = Template(RESULT_TEMPLATE)
        self.deployment_template = Template(DEPLOYMENT_TEMPLATE)

    def render_plan(self, plan: DeploymentPlan, show_variables: bool = False,
                    mask: Optional[set] = None) -> str:
        """
        Renders a deployment plan.

        :param plan: The plan to render.
        :param show_variables: Also list the resolved variables.
        :param mask: Variable names whose values are hidden.
        :return: The rendered text.
        """
        if mask:
            plan = plan.model_copy(update={
                'variables': {k: ('******' if k in mask else v) for k, v in plan.variables.items()}
            })
        return self.plan_template.render(plan=plan, show_variables=show_variables)

    def render_result(self, result: PlanResult) -> str:
        return self.result_template.render(result=result)

    def render_deployment(self, deployment: ProductDeployment) -> str:
        return self.deployment_template.render(d=deployment)
