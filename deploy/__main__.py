import autoalarm.infra
import autoalarm.infra.stack

project = autoalarm.infra.AutoAlarmProject()
autoalarm.infra.stack.AutoAlarmStack(project.name_prefix, project=project, **project.config)
